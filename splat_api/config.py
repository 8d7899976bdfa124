import logging
import os
import shlex
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict

GENERATOR_ENV_PREFIX = "SPLAT_GENERATOR_ENV_"
DEFAULT_GENERATOR_CMD = "sharp predict -i {input_dir} -o {output_dir}"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    upload_dir: Path
    output_dir: Path
    generator_command: List[str]
    conda_sh: Optional[str] = None
    conda_env: Optional[str] = None
    generator_env: Dict[str, str] = {}
    generator_timeout_sec: float = 1800.0
    max_concurrent_jobs: int = 1
    max_queued_jobs: int = 8
    artifact_ext: str = ".ply"
    artifact_media_type: str = "application/x-ply"
    artifact_cache_sec: int = 3600
    max_upload_bytes: int = 50 * 1024 * 1024
    recover_on_startup: bool = True
    log_level: str = "INFO"


def _flag(env: Mapping[str, str], name: str, default: str) -> bool:
    return env.get(name, default).lower() in {"1", "true", "yes"}


def _generator_env(env: Mapping[str, str]) -> Dict[str, str]:
    extra = {
        k[len(GENERATOR_ENV_PREFIX):]: v
        for k, v in env.items()
        if k.startswith(GENERATOR_ENV_PREFIX) and len(k) > len(GENERATOR_ENV_PREFIX)
    }
    # the generator locates its own runtime through HOME
    extra.setdefault("HOME", env.get("HOME") or str(Path.home()))
    return extra


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read process-wide settings from the environment once, at startup."""
    if env is None:
        env = os.environ
    return Settings(
        upload_dir=Path(env.get("SPLAT_UPLOAD_DIR", "tmp/uploads")).resolve(),
        output_dir=Path(env.get("SPLAT_OUTPUT_DIR", "tmp/outputs")).resolve(),
        generator_command=shlex.split(env.get("SPLAT_GENERATOR_CMD", DEFAULT_GENERATOR_CMD)),
        conda_sh=env.get("SPLAT_CONDA_SH") or None,
        conda_env=env.get("SPLAT_CONDA_ENV") or None,
        generator_env=_generator_env(env),
        generator_timeout_sec=float(env.get("SPLAT_GENERATOR_TIMEOUT_SEC", "1800")),
        max_concurrent_jobs=int(env.get("SPLAT_MAX_CONCURRENT_JOBS", "1")),
        max_queued_jobs=int(env.get("SPLAT_MAX_QUEUED_JOBS", "8")),
        artifact_ext=env.get("SPLAT_ARTIFACT_EXT", ".ply"),
        artifact_media_type=env.get("SPLAT_ARTIFACT_MEDIA_TYPE", "application/x-ply"),
        artifact_cache_sec=int(env.get("SPLAT_ARTIFACT_CACHE_SEC", "3600")),
        max_upload_bytes=int(env.get("SPLAT_MAX_UPLOAD_BYTES", str(50 * 1024 * 1024))),
        recover_on_startup=_flag(env, "SPLAT_RECOVER_ON_STARTUP", "true"),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(message)s",
    )
