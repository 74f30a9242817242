import json
import os

CONFIG_PATH = os.environ.get("POS_CONFIG_PATH") or os.path.join(os.getcwd(), "pos-config.json")

DEFAULT_CONFIG = {
    'api_base_url': 'http://localhost:8001',
    # Session token from POST /auth/login; sent as a bearer token.
    'api_token': '',
    'db_path': 'pos.sqlite',
    'request_timeout_s': 10,
    # Synchronizer policy.
    'sync_batch_size': 50,
    'sync_max_attempts': 5,
    'sync_interval_s': 30,
    'catalog_refresh_interval_s': 900,
}


def load_config(path: str = None) -> dict:
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow ops to override without rewriting the on-disk config.
    if os.environ.get("POS_API_BASE_URL"):
        cfg["api_base_url"] = os.environ["POS_API_BASE_URL"]
    if os.environ.get("POS_API_TOKEN"):
        cfg["api_token"] = os.environ["POS_API_TOKEN"]
    if os.environ.get("POS_DB_PATH"):
        cfg["db_path"] = os.environ["POS_DB_PATH"]
    return cfg


def save_config(data: dict, path: str = None):
    path = path or CONFIG_PATH
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
