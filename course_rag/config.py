"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
PACKAGE_DIR = Path(__file__).parent
CORPUS_DIR = Path(os.getenv("CORPUS_DIR", str(BASE_DIR / "course_materials")))
CORPUS_MANIFEST = os.getenv("CORPUS_MANIFEST", "course_materials.txt")
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
PROMPTS_DIR = PACKAGE_DIR / "prompts"

# Knowledge base cache
CACHE_FILE_NAME = "knowledge_base_with_embeddings.json"
CACHE_SCHEMA_VERSION = 1
# Read-only snapshot shipped with the package (optional)
BUNDLED_CACHE_PATH = Path(
    os.getenv("BUNDLED_CACHE_PATH", str(PACKAGE_DIR / "data" / CACHE_FILE_NAME))
)

# Remote model API (OpenAI-compatible endpoints)
LLM_BASE_URL = os.getenv(
    "LLM_BASE_URL", "https://dashscope.aliyuncs.com/compatible-mode/v1"
)
LLM_API_KEY = os.getenv("LLM_API_KEY", "")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "60.0"))
CHAT_MODEL = os.getenv("CHAT_MODEL", "qwen-plus")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-v2")

# Embeddings
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "1536"))
MAX_EMBEDDING_BATCH_SIZE = 25  # upstream limit per request
EMBEDDING_BATCH_SIZE = min(
    int(os.getenv("EMBEDDING_BATCH_SIZE", "25")), MAX_EMBEDDING_BATCH_SIZE
)

# Chunking (character-based)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "500"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "50"))
DOCX_PARAGRAPHS_PER_PAGE = int(os.getenv("DOCX_PARAGRAPHS_PER_PAGE", "20"))

# Retrieval
MAX_RETRIEVAL_RESULTS = int(os.getenv("MAX_RETRIEVAL_RESULTS", "3"))
MIN_SIMILARITY = float(os.getenv("MIN_SIMILARITY", "0.3"))
GROUNDING_THRESHOLD = float(os.getenv("GROUNDING_THRESHOLD", str(MIN_SIMILARITY)))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "0"))  # 0 = unlimited

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
