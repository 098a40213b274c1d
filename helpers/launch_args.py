from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendAddress:
    host: str
    port: int


def parse_backend_address(args: list[str], default_host: str = "localhost", default_port: int = 5001) -> BackendAddress:
    """
    Pull the backend's own listen address out of its launch arguments.
    Later occurrences win; an unparsable port is ignored.
    """
    host = default_host
    port = default_port

    for i in range(len(args) - 1):
        if args[i] in ("--hostname", "--host"):
            host = args[i + 1]
        elif args[i] == "--port":
            try:
                port = int(args[i + 1], 10)
            except ValueError:
                pass

    return BackendAddress(host=host, port=port)


def param_type_for(flag: str) -> str:
    # "--sdmodel" -> "sdmodel"
    return flag[2:] if flag.startswith("--") else flag
