from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path

@dataclass(frozen=True, slots=True)
class PathsConfig:
    """
    File system locations used by the launcher

    All paths are stored as Path objects and normalized (expanded + resolved).
    Directories can be created with `ensure_dirs()`.

    Layout under install_dir:
        <backend-name>-<version>/<launcher executable>
        models/<param type>/<author>/<model>/<filename>
        <asset name>.packed      (transient release download)
    """
    install_dir: Path
    settings_file: Path
    log_dir: Path

    @property
    def models_dir(self) -> Path:
        return self.install_dir / "models"

    @staticmethod
    def from_strings(
        install_dir: str | Path,
        settings_file: str | Path,
        log_dir: str | Path,
    ) -> "PathsConfig":
        """
        Convenience constructor for CLI/env usage.
        """
        return PathsConfig(
            install_dir=PathsConfig._norm(install_dir),
            settings_file=PathsConfig._norm(settings_file),
            log_dir=PathsConfig._norm(log_dir),
        )

    def ensure_dirs(self) -> None:
        """
        Create the install and log directories if they don't exist.
        """
        self.install_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.settings_file.parent.mkdir(parents=True, exist_ok=True)

    def validate(self) -> None:
        """
        Directories can be created; but if they exist and aren't dirs, that's an error
        """
        for p, label in [
            (self.install_dir, "install_dir"),
            (self.log_dir, "log_dir"),
        ]:
            if p.exists() and not p.is_dir():
                raise ValueError(f"{label} exists but is not a directory: {p}")
        if self.settings_file.exists() and self.settings_file.is_dir():
            raise ValueError(f"settings_file is a directory: {self.settings_file}")

    @staticmethod
    def _norm(p: str | Path) -> Path:
        """
        Normalize a path: expand ~ and resolve to an absolute path.
        """
        return Path(p).expanduser().resolve()
