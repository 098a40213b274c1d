# Configuration and event plumbing
from helpers.events import EventHub
from helpers.settings_store import JsonSettingsStore

# Backend lifecycle services
from services.backend_registry import BackendRegistry
from services.release_catalog import ReleaseCatalog
from services.release_installer import ReleaseInstaller
from services.model_resolver import ModelResolver
from services.proxy import LocalProxy
from services.tunnel import TunnelManager
from services.launcher import ProcessLauncher

import atexit


def build_container(cfg, frontends=None):
    """
    Dependency container builder
    Responsibility:
     - Takes a fully loaded config object
     - Constructs every shared service exactly once
     - Wires dependencies together
     - Returns a dictionary of ready-to-use services
    """

    # ---------- Shared state ----------
    # Observers (UI, CLI) subscribe here
    events = EventHub()

    # Persisted key/value settings (current backend, frontend preference)
    settings = JsonSettingsStore(cfg.paths.settings_file)

    # ---------- Backends ----------
    registry = BackendRegistry(
        install_dir=cfg.paths.install_dir,
        settings=settings,
        events=events,
        config=cfg.launcher,
    )

    installer = ReleaseInstaller(
        registry=registry,
        events=events,
        launcher_cfg=cfg.launcher,
        network_cfg=cfg.network,
    )

    catalog = ReleaseCatalog()

    # ---------- Models ----------
    resolver = ModelResolver(
        models_dir=cfg.paths.models_dir,
        events=events,
        network_cfg=cfg.network,
    )

    # ---------- Networking ----------
    proxy = LocalProxy(
        network_cfg=cfg.network,
        vendor_prefix=cfg.launcher.vendor_prefix,
        product_prefix=cfg.launcher.product_prefix,
    )

    tunnel = TunnelManager(
        install_dir=cfg.paths.install_dir,
        events=events,
        network_cfg=cfg.network,
    )

    # ---------- Launcher ----------
    launcher = ProcessLauncher(
        registry=registry,
        resolver=resolver,
        proxy=proxy,
        tunnel=tunnel,
        events=events,
        config=cfg.launcher,
        frontends=frontends,
    )

    # Never leave a backend, tunnel or pre-launch command behind on exit
    atexit.register(launcher.stop)

    # ---- RETURN CONTAINER -----
    return {
        "cfg": cfg,
        "events": events,
        "settings": settings,
        "registry": registry,
        "installer": installer,
        "catalog": catalog,
        "resolver": resolver,
        "proxy": proxy,
        "tunnel": tunnel,
        "launcher": launcher,
    }
