# Test Case Generator - Configuration
# Description: Configuration settings and environment variable loading

import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).lower() in ('1', 'true', 'yes')


class Settings:
    def __init__(self):
        self.port = int(os.getenv('PORT', '5000'))
        self.demo = _flag('DEMO')
        # Comma separated list of allowed origins, or '*'
        self.cors_origins = os.getenv('CORS_ORIGINS', 'https://test-case-generator-one.vercel.app')

        # Admin token for protecting upload/delete/reset endpoints
        self.admin_token = os.getenv('ADMIN_TOKEN') or None

        # LLM providers
        self.openai_api_key = os.getenv('OPENAI_API_KEY') or None
        self.gemini_api_key = os.getenv('GEMINI_API_KEY') or None
        self.anthropic_api_key = os.getenv('ANTHROPIC_API_KEY') or None
        self.OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-3.5-turbo')
        self.PLAYWRIGHT_MODEL = os.getenv('PLAYWRIGHT_MODEL', 'gpt-4o')
        self.GEMINI_MODEL = os.getenv('GEMINI_MODEL', 'gemini-1.5-flash-latest')
        self.CLAUDE_MODEL = os.getenv('CLAUDE_MODEL', 'claude-3-5-sonnet-20240620')
        self.CLAUDE_MAX_TOKENS = int(os.getenv('CLAUDE_MAX_TOKENS', '4096'))
        self.LLM_TIMEOUT = float(os.getenv('LLM_TIMEOUT', '120'))
        self.MAX_INPUT_CHARS = int(os.getenv('MAX_INPUT_CHARS', '20000'))

        # Vector store
        self.qdrant_url = os.getenv('QDRANT_URL') or None
        self.qdrant_path = os.getenv('QDRANT_PATH') or os.path.join(os.path.dirname(__file__), '..', '..', 'local_qdrant_db')
        self.qdrant_api_key = os.getenv('QDRANT_API_KEY') or None
        self.qdrant_collection = os.getenv('QDRANT_COLLECTION', 'documents')
        self.embedding_provider = os.getenv('EMBEDDING_PROVIDER', 'sentence')
        self.embedding_dim = int(os.getenv('EMBEDDING_DIM', '384'))
        # Maximum seconds to wait for embedding provider operations (init/encode)
        self.embedding_timeout = int(os.getenv('EMBEDDING_TIMEOUT', '10'))
        self.openai_embedding_model = os.getenv('OPENAI_EMBEDDING_MODEL', 'text-embedding-3-small')

        # Chunking and retrieval
        self.CHUNK_SIZE = int(os.getenv('CHUNK_SIZE', '200'))
        self.CHUNK_OVERLAP = int(os.getenv('CHUNK_OVERLAP', '50'))
        self.TOP_K_RESULTS = int(os.getenv('TOP_K_RESULTS', '5'))
        self.SIMILARITY_THRESHOLD = float(os.getenv('SIMILARITY_THRESHOLD', '0.2'))
        self.MAX_CONTEXT_CHARS = int(os.getenv('MAX_CONTEXT_CHARS', '6000'))
        self.MAX_UPLOAD_BYTES = int(os.getenv('MAX_UPLOAD_BYTES', str(20 * 1024 * 1024)))

        # Job queue
        self.redis_url = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
        self.signup_queue = os.getenv('SIGNUP_QUEUE', 'signup-jobs')
        self.SIGNUP_JOB_TIMEOUT = int(os.getenv('SIGNUP_JOB_TIMEOUT', '3600'))
        self.SIGNUP_RESULT_TTL = int(os.getenv('SIGNUP_RESULT_TTL', '86400'))
        self.SIGNUP_MAX_ACCOUNTS = int(os.getenv('SIGNUP_MAX_ACCOUNTS', '50'))

        # Signup target site
        self.signup_url_template = os.getenv('SIGNUP_URL_TEMPLATE', 'https://{env}-bk-{region}-web.com.rbi.tools/')
        self.signup_default_env = os.getenv('SIGNUP_DEFAULT_ENV', 'main')
        self.signup_default_region = os.getenv('SIGNUP_DEFAULT_REGION', 'us')
        self.signup_site_password = os.getenv('SIGNUP_SITE_PASSWORD') or None
        self.signup_email_prefix = os.getenv('SIGNUP_EMAIL_PREFIX', 'aiqatest')
        self.signup_email_domain = os.getenv('SIGNUP_EMAIL_DOMAIN', 'yopmail.com')
        self.signup_account_name = os.getenv('SIGNUP_ACCOUNT_NAME', 'RBI DO NOT MAKE')
        self.signup_headless = _flag('SIGNUP_HEADLESS', 'true')
        self.SIGNUP_PAGE_TIMEOUT_MS = int(os.getenv('SIGNUP_PAGE_TIMEOUT_MS', '45000'))
        self.signup_screenshot_dir = os.getenv('SIGNUP_SCREENSHOT_DIR') or os.path.join(os.getcwd(), 'screenshots')

        # Logging control: when false, logs will only be emitted to stderr/console
        self.LOG_TO_FILE = _flag('LOG_TO_FILE')

    def allowed_origins(self):
        """CORS origins as accepted by quart_cors ('*' or a list)."""
        raw = (self.cors_origins or '').strip()
        if not raw or raw == '*':
            return '*'
        return [o.strip() for o in raw.split(',') if o.strip()]

settings = Settings()
