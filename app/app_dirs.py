from __future__ import annotations
from pathlib import Path
import os

from platformdirs import user_data_dir, user_log_dir

APP_NAME = "Burrow"
APP_ORG = "Burrow"


def _dev_mode() -> bool:
    return os.getenv("DEV_MODE", "").strip() in {"1", "true", "True", "yes", "YES"}


# Determines where the app data should live
# APP_DATA_DIR wins, dev mode uses .appdata in the repo,
# otherwise the OS-standard user data directory.
def get_app_base_dir(app_name: str = APP_NAME, org: str = APP_ORG) -> Path:
    override = os.getenv("APP_DATA_DIR")
    if override:
        return Path(override).expanduser().resolve()

    if _dev_mode():
        project_root = Path(__file__).resolve().parents[1]
        return (project_root / ".appdata").resolve()

    return Path(user_data_dir(app_name, org)).resolve()


# Logs go next to the data when the location is overridden,
# otherwise into the OS log directory.
def get_log_dir(app_name: str = APP_NAME, org: str = APP_ORG) -> Path:
    if os.getenv("APP_DATA_DIR") or _dev_mode():
        return get_app_base_dir(app_name, org) / "logs"
    return Path(user_log_dir(app_name, org)).resolve()
