
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cotravel.db")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 60 * 60)))
CHALLENGE_TTL_SECONDS = int(os.getenv("CHALLENGE_TTL_SECONDS", "300"))
ADMIN_WALLETS = {w.strip() for w in os.getenv("ADMIN_WALLETS", "").split(",") if w.strip()}

PENALTY_PERCENT = int(os.getenv("PENALTY_PERCENT", "15"))
NETWORK_FEE_STROOPS = int(os.getenv("NETWORK_FEE_STROOPS", "100"))

SOROBAN_RPC_URL = os.getenv("SOROBAN_RPC_URL", "https://soroban-testnet.stellar.org")
HORIZON_URL = os.getenv("HORIZON_URL", "https://horizon-testnet.stellar.org")
NETWORK_PASSPHRASE = os.getenv("SOROBAN_NETWORK_PASSPHRASE", "Test SDF Network ; September 2015")
CONTRACT_ID = os.getenv("CONTRACT_ID")
CHAIN_CONFIRM_MODE = os.getenv("CHAIN_CONFIRM_MODE", "inline")  # inline|worker
CHAIN_CONFIRM_ATTEMPTS = int(os.getenv("CHAIN_CONFIRM_ATTEMPTS", "30"))
CHAIN_POLL_INTERVAL = float(os.getenv("CHAIN_POLL_INTERVAL", "1.0"))
RECONCILE_INTERVAL_SECONDS = float(os.getenv("RECONCILE_INTERVAL_SECONDS", "60"))

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "chain")

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "cotravel")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
