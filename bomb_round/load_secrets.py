import os
from dotenv import load_dotenv

load_dotenv()

user = os.getenv("DB_USER", "postgres")
password = os.getenv("DB_PASSWORD", "postgres")
host = os.getenv("DB_HOST", "localhost")
port = os.getenv("DB_PORT", "5432")
db_name = os.getenv("DB_NAME", "bomb_round")
database_backend = os.getenv("DATABASE_BACKEND", "postgres")
sqlite_path = os.getenv("SQLITE_PATH", "bomb_round.sqlite3")

session_ttl_hours = int(os.getenv("SESSION_TTL_HOURS", "24"))
session_idle_minutes = int(os.getenv("SESSION_IDLE_MINUTES", "15"))
prune_interval_minutes = int(os.getenv("PRUNE_INTERVAL_MINUTES", "5"))
store_timeout_seconds = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

rpc_url = os.getenv("RPC_URL_BASE_SEPOLIA", "https://sepolia.base.org")
rpc_timeout_seconds = float(os.getenv("RPC_TIMEOUT_SECONDS", "10"))
receipt_timeout_seconds = float(os.getenv("RECEIPT_TIMEOUT_SECONDS", "30"))
receipt_poll_seconds = float(os.getenv("RECEIPT_POLL_SECONDS", "1.5"))
chain_id = int(os.getenv("DEGENSHOOT_CHAIN_ID", "84532"))
game_id = int(os.getenv("GAME_ID", "1"))
game_address = os.getenv("DEGENSHOOT_ADDRESS")
wager_vault_address = os.getenv("WAGER_VAULT_ADDRESS")
xp_registry_address = os.getenv("XP_REGISTRY_ADDRESS")
game_signer_private_key = os.getenv("GAME_SIGNER_PRIVATE_KEY")
xp_signer_private_key = os.getenv("XP_SIGNER_PRIVATE_KEY") or game_signer_private_key

cron_secret = os.getenv("CRON_SECRET")
redis_url = os.getenv("REDIS_URL")
