import logging
import os

from loguru import logger

# Intercept the configuration pipeline at the root of test discovery.
# This strictly isolates the physical database, ensuring TestClient lifespan
# events or un-mocked sessions operate exclusively in ephemeral memory.
os.environ["SQLITE_DB_PATH"] = ":memory:"
os.environ["SESSION_SECRET"] = "test-session-secret-not-for-production"

# Minimum bcrypt cost keeps password hashing out of the test runtime budget
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("SMS_GATEWAY_URL", None)
os.environ.pop("SEQ_URL", None)

# Globally mute application logs during testing to prevent terminal noise
# from unhappy-path testing (401s, 403s, validation errors, etc.)
logger.disable("qatrack")

logging.getLogger("asyncio").setLevel(logging.ERROR)
