"""Materialise declared files (init SQL, storage config, DAGs) before bring-up."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from pipespine.core.errors import ConfigurationError
from pipespine.core.logging import get_logger
from pipespine.deploy.config import FileAsset

logger = get_logger(__name__)


def resolve_asset_path(asset: FileAsset, base_dir: Path) -> Path:
    """Resolve ``asset.path`` against ``base_dir``, refusing to escape it."""
    base = base_dir.resolve()
    path = (base / asset.path).resolve()
    if not path.is_relative_to(base):
        raise ConfigurationError(f"file path {asset.path!r} escapes {base}")
    return path


def prepare_files(assets: Iterable[FileAsset], base_dir: str | Path) -> list[Path]:
    """Write every asset under ``base_dir``.

    Existing files are left alone unless ``overwrite`` is set, so hand
    edits survive re-runs.

    Returns
    -------
    list[Path]
        Paths actually written.

    Raises
    ------
    ConfigurationError
        A path escapes ``base_dir`` or cannot be written.
    """
    base_dir = Path(base_dir)
    written: list[Path] = []
    for asset in assets:
        path = resolve_asset_path(asset, base_dir)
        if path.exists() and not asset.overwrite:
            logger.debug("files.kept", path=str(path))
            continue
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(asset.content, encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"cannot write {path}: {exc}", cause=exc) from exc
        logger.info("files.written", path=str(path))
        written.append(path)
    return written
