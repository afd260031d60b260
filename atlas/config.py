from dotenv import load_dotenv
from decimal import Decimal
import os

# Load environment variables from a .env file
load_dotenv()

# Retrieve parts of the database URL from environment variables
DB_USER = os.getenv("DB_USERNAME", "root")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_HOST = os.getenv("DB_HOST", "127.0.0.1")
DB_PORT = os.getenv("DB_PORT", "3306")
DB_NAME = os.getenv("DB_NAME", "test")

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

# Money flow
PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.025"))
PLATFORM_ACCOUNT_ID = os.getenv("PLATFORM_ACCOUNT_ID", "atlas-treasury")

# Challenge lifecycle
DEFAULT_EXPIRY_DAYS = int(os.getenv("DEFAULT_EXPIRY_DAYS", 7))
ALLOWED_EXPIRY_DAYS = (1, 3, 7, 14, 30)
EXPIRE_ACCEPTED_CHALLENGES = os.getenv("EXPIRE_ACCEPTED_CHALLENGES", "").lower() in ("1", "true", "yes")
MAX_VIDEO_DURATION_SECONDS = int(os.getenv("MAX_VIDEO_DURATION_SECONDS", 30))

# Escrow gateway calls are bounded; a timeout is treated as a failure
ESCROW_TIMEOUT_SECONDS = float(os.getenv("ESCROW_TIMEOUT_SECONDS", 15))

# Optimistic concurrency
MAX_SAVE_RETRIES = int(os.getenv("MAX_SAVE_RETRIES", 3))
# A settlement claim older than this is treated as abandoned and taken over;
# it must outlast the escrow calls of the longest settlement (four steps)
CLAIM_TIMEOUT_SECONDS = float(os.getenv("CLAIM_TIMEOUT_SECONDS", ESCROW_TIMEOUT_SECONDS * 10))

# Shared secret presented by the community vote collaborator
DISPUTE_RESOLVER_TOKEN = os.getenv("DISPUTE_RESOLVER_TOKEN")

# Firebase service account used for push delivery (disabled when unset)
FIREBASE_CREDENTIALS_JSON = os.getenv("FIREBASE_CREDENTIALS_JSON")

# Build the database URL
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"mysql+pymysql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)
