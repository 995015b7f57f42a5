import os

# Load .env.test for tests when present; otherwise pin the settings the
# suite depends on before anything reads them.
from dotenv import load_dotenv

env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=True)

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DISPATCH_BACKEND", "local")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./commerce-test.db")
os.environ.setdefault("GATEWAY_SECRET_KEY", "test-gateway-secret")

from libs.common.config import get_settings  # noqa: E402

# Clear cached settings to reload with new env vars
get_settings.cache_clear()
