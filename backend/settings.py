import os
from typing import List


def load_dotenv_file() -> None:
    base_dir = os.path.dirname(os.path.abspath(__file__))
    env_paths = [
        os.path.join(base_dir, ".env"),
        os.path.join(os.path.dirname(base_dir), ".env"),
    ]
    for env_path in env_paths:
        if not os.path.exists(env_path):
            continue
        with open(env_path, "r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, val = line.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key and key not in os.environ:
                    os.environ[key] = val


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_list(name: str, default: str) -> List[str]:
    return [part.strip() for part in os.getenv(name, default).split(",") if part.strip()]


load_dotenv_file()

APP_NAME = "tabby-backend"
APP_VERSION = "0.5.0"
LOG_LEVEL = os.getenv("TABBY_LOG_LEVEL", "INFO").strip().upper()
LOG_JSON = env_flag("TABBY_LOG_JSON", False)
CORS_ALLOW_ORIGINS = env_list("TABBY_CORS_ALLOW_ORIGINS", "*")
# Strict: a share pointing at an unknown item/person fails the request instead of being dropped.
STRICT_SHARE_REFERENCES = env_flag("TABBY_STRICT_SHARE_REFERENCES", True)
UNASSIGNED_POLICY = os.getenv("TABBY_UNASSIGNED_POLICY", "count_in_base").strip().lower()
DEFAULT_INCLUDE_ZERO_ITEM_PEOPLE = env_flag("TABBY_INCLUDE_ZERO_ITEM_PEOPLE", True)
