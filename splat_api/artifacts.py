import os
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote

from .config import Settings
from .errors import NotFound
from .storage import RECORD_NAME, job_output_dir


def resolve_artifact(out_dir: Path, ext: str) -> Optional[str]:
    """Name of the artifact in ``out_dir``, or None if there is none yet.

    The generator does not promise a unique output name, so when several
    files match the lexicographically first one wins. Listing errors
    (including a missing directory) propagate to the caller. The job record
    and its temp files never count, whatever the extension.
    """
    with os.scandir(out_dir) as it:
        names = sorted(
            e.name
            for e in it
            if e.name.endswith(ext) and e.is_file() and not e.name.startswith(RECORD_NAME)
        )
    return names[0] if names else None


def find_artifact(settings: Settings, job_id: str, file_name: Optional[str] = None) -> Path:
    out_dir = job_output_dir(settings, job_id)
    try:
        name = resolve_artifact(out_dir, settings.artifact_ext)
    except (FileNotFoundError, NotADirectoryError):
        raise NotFound("job not found")
    if name is None or (file_name is not None and file_name != name):
        raise NotFound("artifact not found")
    return out_dir / name


def artifact_url(job_id: str, name: str) -> str:
    return f"/api/ply/{job_id}/{quote(name)}"


def artifact_headers(settings: Settings) -> Dict[str, str]:
    # Content-Disposition comes from FileResponse, which encodes non-ASCII names
    return {
        "Cache-Control": f"public, max-age={settings.artifact_cache_sec}",
        "Access-Control-Allow-Origin": "*",
    }
