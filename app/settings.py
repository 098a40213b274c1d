from __future__ import annotations

from dataclasses import dataclass
import os

from app.app_dirs import get_app_base_dir, get_log_dir
from config.launcher_config import LauncherConfig, NetworkConfig
from config.paths_config import PathsConfig


@dataclass(frozen=True, slots=True)
class AppConfig:
    paths: PathsConfig
    launcher: LauncherConfig
    network: NetworkConfig


def build_settings(debug: bool | None = None) -> AppConfig:
    if debug is None:
        debug = os.getenv("BURROW_DEBUG", "").strip() in {"1", "true", "True", "yes", "YES"}

    base = get_app_base_dir()
    paths = PathsConfig.from_strings(
        install_dir=base / "backends",
        settings_file=base / "config.json",
        log_dir=get_log_dir(),
    )
    paths.validate()
    paths.ensure_dirs()

    launcher = LauncherConfig.from_strings(
        launcher_name="koboldcpp-launcher",
        ready_marker="Please connect to custom endpoint at ",
        builtin_frontend="koboldcpp",
        default_host="localhost",
        default_port=5001,
        unpack_timeout_s=60,
        version_timeout_s=30,
        teardown_timeout_s=5,
        debug_output=debug,
    )

    network = NetworkConfig(
        proxy_host="127.0.0.1",
        proxy_port=5002,
        tunnel_url_timeout_s=30,
        tunnel_target_wait_s=60,
    )
    network.validate()

    return AppConfig(paths=paths, launcher=launcher, network=network)
