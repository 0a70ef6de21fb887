"""Loads the host list, the command list and the files to stage."""
from __future__ import annotations

import logging
from pathlib import Path, PureWindowsPath
from typing import Iterable, List

from .errors import SourceMissingError
from .models import CommandSpec, FileArtifact

logger = logging.getLogger("fleet.inventory")


def _read_lines(path: Path, what: str) -> List[str]:
    path = Path(path)
    if not path.is_file():
        raise SourceMissingError(f"{what} not found: {path}")
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            return [line.strip() for line in f if line.strip()]
    except (OSError, UnicodeDecodeError) as exc:
        raise SourceMissingError(f"{what} unreadable: {path} ({exc})") from exc


def load_hosts(path: Path) -> List[str]:
    """Host identifiers in file order, one per line, duplicates dropped."""
    hosts = list(dict.fromkeys(_read_lines(path, "Host list")))
    logger.debug("Loaded %s hosts from %s", len(hosts), path)
    return hosts


def load_commands(path: Path) -> List[CommandSpec]:
    lines = _read_lines(path, "Command list")
    logger.debug("Loaded %s commands from %s", len(lines), path)
    return [CommandSpec(position=i, text=line) for i, line in enumerate(lines)]


def resolve_artifacts(names: Iterable[str], local_dir: Path, remote_dir: str) -> List[FileArtifact]:
    artifacts: List[FileArtifact] = []
    for name in names:
        source = Path(local_dir) / name
        if not source.is_file():
            raise SourceMissingError(f"File to upload not found: {source}")
        destination = str(PureWindowsPath(remote_dir) / PureWindowsPath(name).name)
        artifacts.append(FileArtifact(name=name, source_path=source, destination_path=destination))
    return artifacts
