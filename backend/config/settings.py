"""
Django settings for DocuChat backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',')
]

# Application definition
INSTALLED_APPS = [
    'apps.indexing',
    'apps.rag',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# No relational models: chunks and vectors live in the vector store blob
DATABASES = {}

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# =============================================================================
# Providers
# =============================================================================
# Remote A: LM Studio (OpenAI-compatible API)
LMSTUDIO_BASE_URL = os.getenv('LMSTUDIO_BASE_URL', 'http://localhost:1234/v1')
LMSTUDIO_API_KEY = os.getenv('LMSTUDIO_API_KEY', '')
LMSTUDIO_EMBED_MODEL = os.getenv('LMSTUDIO_EMBED_MODEL', 'local-model')
LMSTUDIO_MODEL = os.getenv('LMSTUDIO_MODEL', 'local-model')

# Remote B: Ollama REST API
OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://localhost:11434')
OLLAMA_EMBED_MODEL = os.getenv('OLLAMA_EMBED_MODEL', 'nomic-embed-text')
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'llama3.2')

# In-process models (sentence-transformers / transformers)
LOCAL_EMBED_MODEL = os.getenv('LOCAL_EMBED_MODEL', 'sentence-transformers/all-MiniLM-L6-v2')
LOCAL_LLM_MODEL = os.getenv('LOCAL_LLM_MODEL', 'Qwen/Qwen2.5-0.5B-Instruct')
LOCAL_DEVICE = os.getenv('LOCAL_DEVICE', '')  # empty = auto-detect

# Timeouts (in seconds) - increase for slower hardware
LLM_TIMEOUT = int(os.getenv('LLM_TIMEOUT', '600'))  # 10 min
EMBED_TIMEOUT = int(os.getenv('EMBED_TIMEOUT', '120'))  # 2 min

# Sampling
LLM_TEMPERATURE = float(os.getenv('LLM_TEMPERATURE', '0.7'))
LLM_TOP_P = float(os.getenv('LLM_TOP_P', '0.95'))
LLM_MAX_TOKENS = int(os.getenv('LLM_MAX_TOKENS', '1024'))

# =============================================================================
# Retrieval
# =============================================================================
CHUNK_SIZE = int(os.getenv('CHUNK_SIZE', '1000'))
CHUNK_OVERLAP = int(os.getenv('CHUNK_OVERLAP', '200'))

# Number of chunks retrieved per question
RAG_TOP_K = int(os.getenv('RAG_TOP_K', '5'))

# When the first query returns nothing, retry once with RAG_TOP_K * multiplier
RAG_RETRY_MULTIPLIER = int(os.getenv('RAG_RETRY_MULTIPLIER', '3'))

# Model ids matching any of these patterns get the structured-source prompt
STRUCTURED_SOURCE_MODEL_PATTERNS = [
    p.strip() for p in os.getenv(
        'STRUCTURED_SOURCE_MODEL_PATTERNS', r'deepseek,qwen,phi-3'
    ).split(',') if p.strip()
]

# =============================================================================
# Vector Store Persistence
# =============================================================================
# "file" (JSON blob on disk) or "redis"
VECTOR_STORE_BACKEND = os.getenv('VECTOR_STORE_BACKEND', 'file')
VECTOR_STORE_DIR = Path(os.getenv('VECTOR_STORE_DIR', BASE_DIR / 'data' / 'vector_store'))
VECTOR_STORE_KEY = os.getenv('VECTOR_STORE_KEY', 'docuchat_vector_store')
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')

# =============================================================================
# File Upload Configuration
# =============================================================================
# Maximum file size in bytes (50MB default)
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', 50 * 1024 * 1024))

# Allowed file extensions
ALLOWED_EXTENSIONS = ['.pdf', '.txt', '.md', '.markdown', '.csv']

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps.indexing': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
    },
}
