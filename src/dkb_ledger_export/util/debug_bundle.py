from __future__ import annotations

import json
import logging
import re
import time
import zipfile
from pathlib import Path
from typing import Optional, Union


logger = logging.getLogger(__name__)


def save_debug_artifact(debug_dir: str, *, name_prefix: str, content: Union[bytes, str], suffix: str = ".txt") -> Optional[Path]:
    """
    Persist a raw response body (HTML page, CSV export, JSON) that could not be parsed, so parsing can be
    debugged offline. Never raises; a failed debug write must not mask the original error.
    """
    if not debug_dir:
        return None
    safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name_prefix).strip("_")[:60] or "artifact"
    stamp = time.strftime("%Y%m%d_%H%M%S")
    try:
        out_dir = Path(debug_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        out = out_dir / f"{stamp}_{safe}{suffix}"
        if isinstance(content, bytes):
            out.write_bytes(content)
        else:
            out.write_text(content, encoding="utf-8")
        return out
    except Exception:
        logger.debug("Failed to save debug artifact (name=%s).", name_prefix, exc_info=True)
        return None


def _failure_summary(error: BaseException, *, surface: str) -> dict:
    return {
        "surface": surface,
        "error_type": type(error).__name__,
        "step": getattr(error, "step", "") or "",
        "account": getattr(error, "account", None),
        "message": str(error),
        "created_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
    }


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    surface: str = "",
    error: Optional[BaseException] = None,
) -> Path:
    """
    Create a shareable zip containing saved response bodies + logs.

    With `error`, a `failure.json` records the surface, the failing step and account and the error text.
    Excludes .env and config.yaml; credentials never end up in the bundle.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    surf = (surface or "").strip().lower()
    surf_part = f"_{surf}" if surf else ""
    out_path = out_root / f"debug_bundle{surf_part}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        try:
            if file_path.exists() and file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # a file may disappear while bundling
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        _add_file(z, log, arcname=log.name)
        if error is not None:
            z.writestr("failure.json", json.dumps(_failure_summary(error, surface=surf), indent=2, ensure_ascii=False))

        if dbg.exists() and dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if not p.is_file():
                    continue
                rel = p.relative_to(dbg)
                _add_file(z, p, arcname=str(Path("debug") / rel))

    return out_path
