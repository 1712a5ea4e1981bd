"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Model provider (Volcengine Ark compatible endpoints)
ARK_BASE_URL = os.getenv("ARK_BASE_URL", "https://ark.cn-beijing.volces.com/api/v3")
ARK_API_KEY = os.getenv("ARK_API_KEY", "")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "doubao-embedding-vision")
CHAT_MODEL = os.getenv("CHAT_MODEL", "doubao-seed-1-6")
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "120.0"))
EMBEDDING_DIM = int(os.getenv("EMBEDDING_DIM", "2048"))

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "800"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "100"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "10"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))

# Vector index (IVF_FLAT over squared L2)
VECTOR_NLIST = int(os.getenv("VECTOR_NLIST", "1024"))
VECTOR_NPROBE = int(os.getenv("VECTOR_NPROBE", "10"))
# FAISS k-means wants ~39 points per list before it stops warning
VECTOR_TRAIN_SIZE = int(os.getenv("VECTOR_TRAIN_SIZE", str(VECTOR_NLIST * 39)))
VECTOR_CONTENT_MAX_LENGTH = int(os.getenv("VECTOR_CONTENT_MAX_LENGTH", "8192"))

# Background ingestion
INGEST_WORKERS = int(os.getenv("INGEST_WORKERS", "2"))
INGEST_QUEUE_SIZE = int(os.getenv("INGEST_QUEUE_SIZE", "100"))

# Database
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "articles.sqlite")))
VECTOR_INDEX_PATH = DATA_DIR / "vectors.index"
METADATA_PATH = DATA_DIR / "metadata.json"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
