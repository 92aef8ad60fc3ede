# Ensure '<repo root>' is on sys.path so 'import topicchat.*' works without an install,
# and pin settings before any topicchat module is imported.
import os
from pathlib import Path
import sys

_REPO_ROOT = Path(__file__).resolve().parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

os.environ["CI"] = "1"
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.pop("REDIS_URL", None)
# urlsafe base64 of 32 ASCII bytes; test-only key
os.environ["MESSAGE_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
os.environ["ENCRYPTION_UPGRADE_DELAY_MS"] = "0"
# Stores built without an explicit storage keep last-read times in memory.
os.environ["LOCAL_STORAGE_PATH"] = ""
os.environ["NETWORK_RETRY_INITIAL_DELAY_MS"] = "0"
os.environ["NETWORK_RETRY_MAX_DELAY_MS"] = "0"
os.environ["DATABASE_RETRY_INITIAL_DELAY_MS"] = "0"
os.environ["DATABASE_RETRY_MAX_DELAY_MS"] = "0"
