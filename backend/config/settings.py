"""
Django settings for the DocChat backend.
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
    'apps.authn',
    'apps.store',
    'apps.docs',
    'apps.rag',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# Document metadata lives behind the Supabase REST gateway; Django keeps no
# tables of its own.
DATABASES = {}

# Password validation (minimal for API-only backend)
AUTH_PASSWORD_VALIDATORS = []

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Supabase (PostgREST + Storage gateway)
# =============================================================================
# Both values are required for every store call. Missing values are reported
# per request as a configuration error, not at import time.
SUPABASE_URL = os.getenv('SUPABASE_URL', '')
SUPABASE_ANON_KEY = os.getenv('SUPABASE_ANON_KEY', '')

# Optional. When set, bearer tokens are verified locally (HS256) before being
# forwarded. When empty, the store is the only verifier.
SUPABASE_JWT_SECRET = os.getenv('SUPABASE_JWT_SECRET', '')
SUPABASE_JWT_AUDIENCE = os.getenv('SUPABASE_JWT_AUDIENCE', 'authenticated')

# Storage bucket holding uploaded files
STORAGE_BUCKET = os.getenv('STORAGE_BUCKET', 'files')

# Timeout for REST/storage calls (seconds)
STORE_TIMEOUT = float(os.getenv('STORE_TIMEOUT', '30'))

# =============================================================================
# Retrieval
# =============================================================================
# Minimum cosine similarity passed to match_document_sections
MATCH_THRESHOLD = float(os.getenv('MATCH_THRESHOLD', '0.8'))

# Maximum number of sections injected into the prompt
MATCH_LIMIT = int(os.getenv('MATCH_LIMIT', '5'))

# =============================================================================
# Query embeddings
# =============================================================================
# "local": sentence-transformers model loaded in-process
# "remote": Ollama /api/embeddings
EMBEDDING_MODE = os.getenv('EMBEDDING_MODE', 'local').lower()
EMBEDDING_MODEL = os.getenv('EMBEDDING_MODEL', 'thenlper/gte-small')

# Must match the dimension of document_sections.embedding
EMBEDDING_DIMENSION = int(os.getenv('EMBEDDING_DIMENSION', '384'))

# Start loading the local model in the background when the app boots
EMBEDDING_PRELOAD = os.getenv('EMBEDDING_PRELOAD', 'False').lower() in ('true', '1', 'yes')

# =============================================================================
# Ollama
# =============================================================================
OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://ollama:11434')
OLLAMA_EMBED_MODEL = os.getenv('OLLAMA_EMBED_MODEL', 'all-minilm')  # 384 dimensions
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'llama3.2')

# Timeouts (in seconds) - increase for slower hardware
OLLAMA_CHAT_TIMEOUT = int(os.getenv('OLLAMA_CHAT_TIMEOUT', '600'))  # 10 min
OLLAMA_EMBED_TIMEOUT = int(os.getenv('OLLAMA_EMBED_TIMEOUT', '120'))  # 2 min

# =============================================================================
# Chat completion
# =============================================================================
# "openai" (default) or "ollama"
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'openai').lower()

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL', 'https://api.openai.com/v1')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-3.5-turbo-0125')
OPENAI_TIMEOUT = int(os.getenv('OPENAI_TIMEOUT', '120'))

# Hard cap on generated tokens per answer
CHAT_MAX_TOKENS = int(os.getenv('CHAT_MAX_TOKENS', '1024'))

# Optional override of the system instruction. Must contain "{context}".
RAG_SYSTEM_PROMPT = os.getenv('RAG_SYSTEM_PROMPT', '')

# =============================================================================
# File Upload Configuration
# =============================================================================
# Maximum file size in bytes (50MB default)
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', 50 * 1024 * 1024))

# Allowed file extensions
ALLOWED_EXTENSIONS = ['.md', '.markdown', '.txt']

# Lifetime of download links (seconds)
SIGNED_URL_TTL = int(os.getenv('SIGNED_URL_TTL', '60'))

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
        'json': {
            'format': '%(message)s',  # Audit logs are already JSON
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'audit': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps.docs': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'audit': {
            'handlers': ['audit'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
