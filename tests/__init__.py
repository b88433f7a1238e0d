import logging
import os

# Intercept the configuration pipeline at the root of test discovery.
# This strictly isolates the physical database, ensuring TestClient lifespan
# events or un-mocked sessions operate exclusively in ephemeral memory.
os.environ["SQLITE_DB_PATH"] = ":memory:"
os.environ.setdefault("SECRET_KEY", "test-session-secret")
os.environ.setdefault("IDENTITY_API_KEY", "sk_test_identity")
os.environ.setdefault("IDENTITY_API_URL", "https://identity.test/v1")

from loguru import logger  # noqa: E402

# Globally mute application logs during testing to prevent terminal noise
# from unhappy-path testing (404s, validation errors, etc.)
logger.disable("src")

# Suppress native asyncio debug warnings caused by simulated latency
logging.getLogger("asyncio").setLevel(logging.ERROR)
