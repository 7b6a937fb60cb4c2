"""Answer prompt templates loaded from YAML."""
import re
from pathlib import Path
from typing import Dict, Optional

import structlog
import yaml

from course_rag import config

logger = structlog.get_logger()

PROMPT_FILE = "qa.yaml"
PROMPT_VARIANTS = ("qa_grounded", "qa_general", "code_grounded", "code_general")
_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def select_variant(grounded: bool, has_code: bool) -> str:
    """Pick the prompt variant for the {grounded} x {code question} matrix."""
    if has_code:
        return "code_grounded" if grounded else "code_general"
    return "qa_grounded" if grounded else "qa_general"


class PromptLibrary:
    """Loads prompt templates once and renders them with variables."""

    def __init__(self, prompts_dir: Path = None):
        """Initialize the prompt library.

        Args:
            prompts_dir: Directory holding qa.yaml (default from config)
        """
        self.prompts_dir = Path(prompts_dir or config.PROMPTS_DIR)
        self._templates: Optional[Dict[str, str]] = None

    @property
    def templates(self) -> Dict[str, str]:
        if self._templates is None:
            path = self.prompts_dir / PROMPT_FILE
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            missing = [name for name in PROMPT_VARIANTS if name not in data]
            if missing:
                raise ValueError(f"Prompt file {path} is missing variants: {missing}")

            self._templates = {name: str(text) for name, text in data.items()}
            logger.debug("prompts_loaded", path=str(path), count=len(self._templates))
        return self._templates

    def render(self, name: str, **variables: str) -> str:
        """Render a template by plain placeholder replacement.

        Braces in values (code snippets) are left untouched.

        Raises:
            KeyError: If the template doesn't exist
        """
        template = self.templates[name]
        return _PLACEHOLDER.sub(
            lambda m: (variables.get(m.group(1)) or "")
            if m.group(1) in variables
            else m.group(0),
            template,
        )
