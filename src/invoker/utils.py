from __future__ import annotations

from pathlib import Path

from dotenv import dotenv_values


def load_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    values = dotenv_values(dotenv_path=path)
    return {key: value for key, value in values.items() if value is not None}


def trim_path_for_length(path: str, length: int) -> str:
    if len(path) < length:
        return path

    relative = path[1:] if path.startswith("/") else path
    branches = relative.split("/")
    if len(branches) == 1:
        return relative[:length]
    if branches[0] == "home":
        relative = "~/" + "/".join(branches[2:])
    if len(relative) < length:
        return relative
    return relative[:length] + "..."
