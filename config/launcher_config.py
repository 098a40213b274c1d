from __future__ import annotations
from dataclasses import dataclass, field

MODEL_PARAMS: tuple[str, ...] = (
    "--model",
    "--sdmodel",
    "--sdt5xxl",
    "--sdclipl",
    "--sdclipg",
    "--sdphotomaker",
    "--sdvae",
    "--sdlora",
    "--mmproj",
    "--whispermodel",
    "--draftmodel",
    "--ttsmodel",
    "--ttswavtokenizer",
    "--embeddingsmodel",
)


@dataclass(frozen=True, slots=True)
class LauncherConfig:
    launcher_name: str = "koboldcpp-launcher"
    ready_marker: str = "Please connect to custom endpoint at "
    builtin_frontend: str = "koboldcpp"
    default_host: str = "localhost"
    default_port: int = 5001
    model_params: tuple[str, ...] = MODEL_PARAMS

    vendor_prefix: str = "koboldcpp"
    product_prefix: str = "burrow"

    unpack_timeout_s: float = 60.0
    version_timeout_s: float = 30.0
    teardown_timeout_s: float = 5.0
    debug_output: bool = False

    def validate(self) -> None:
        if not isinstance(self.launcher_name, str) or not self.launcher_name.strip():
            raise ValueError("LauncherConfig.launcher_name must be a non-empty string.")
        if not isinstance(self.ready_marker, str) or not self.ready_marker.strip():
            raise ValueError("LauncherConfig.ready_marker must be a non-empty string.")
        if not isinstance(self.builtin_frontend, str) or not self.builtin_frontend.strip():
            raise ValueError("LauncherConfig.builtin_frontend must be a non-empty string.")
        if not isinstance(self.default_host, str) or not self.default_host.strip():
            raise ValueError("LauncherConfig.default_host must be a non-empty string.")
        if not isinstance(self.default_port, int) or not 0 < self.default_port < 65536:
            raise ValueError("LauncherConfig.default_port must be a valid TCP port.")
        if not self.model_params or not all(p.startswith("--") for p in self.model_params):
            raise ValueError("LauncherConfig.model_params must be a non-empty tuple of --flags.")
        if not self.vendor_prefix or not self.product_prefix:
            raise ValueError("LauncherConfig vendor/product prefixes must be non-empty.")
        for name in ("unpack_timeout_s", "version_timeout_s", "teardown_timeout_s"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"LauncherConfig.{name} must be a positive number.")
        if not isinstance(self.debug_output, bool):
            raise ValueError("LauncherConfig.debug_output must be a bool.")

    @staticmethod
    def from_strings(
            launcher_name: str = "koboldcpp-launcher",
            ready_marker: str = "Please connect to custom endpoint at ",
            builtin_frontend: str = "koboldcpp",
            default_host: str = "localhost",
            default_port: int = 5001,
            unpack_timeout_s: float = 60.0,
            version_timeout_s: float = 30.0,
            teardown_timeout_s: float = 5.0,
            debug_output: bool = False,
    ) -> "LauncherConfig":
        cfg = LauncherConfig(
            launcher_name=launcher_name,
            ready_marker=ready_marker,
            builtin_frontend=builtin_frontend,
            default_host=default_host,
            default_port=default_port,
            unpack_timeout_s=unpack_timeout_s,
            version_timeout_s=version_timeout_s,
            teardown_timeout_s=teardown_timeout_s,
            debug_output=debug_output,
        )
        cfg.validate()
        return cfg


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 5002

    tunnel_bin_name: str = "cloudflared"
    tunnel_release_url: str = "https://github.com/cloudflare/cloudflared/releases/latest/download"
    tunnel_url_timeout_s: float = 30.0
    tunnel_target_wait_s: float = 60.0
    tunnel_poll_interval_s: float = 0.5
    frontend_targets: dict[str, str] = field(default_factory=dict)

    max_redirects: int = 10
    release_progress_interval_s: float = 0.1
    model_progress_interval_s: float = 0.5
    chunk_size: int = 1024 * 1024

    @property
    def proxy_url(self) -> str:
        return f"http://{self.proxy_host}:{self.proxy_port}"

    def validate(self) -> None:
        if not isinstance(self.proxy_host, str) or not self.proxy_host.strip():
            raise ValueError("NetworkConfig.proxy_host must be a non-empty string.")
        if not isinstance(self.proxy_port, int) or not 0 <= self.proxy_port < 65536:
            raise ValueError("NetworkConfig.proxy_port must be a valid TCP port (0 picks a free one).")
        if not isinstance(self.max_redirects, int) or self.max_redirects < 0:
            raise ValueError("NetworkConfig.max_redirects must be a non-negative integer.")
        if not isinstance(self.chunk_size, int) or self.chunk_size <= 0:
            raise ValueError("NetworkConfig.chunk_size must be a positive integer.")
        for name in (
            "tunnel_url_timeout_s",
            "tunnel_target_wait_s",
            "tunnel_poll_interval_s",
            "release_progress_interval_s",
            "model_progress_interval_s",
        ):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ValueError(f"NetworkConfig.{name} must be a positive number.")
        for pref, url in self.frontend_targets.items():
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"NetworkConfig.frontend_targets[{pref!r}] must be an http(s) URL.")
