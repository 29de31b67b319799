"""Environment configuration and the read-only camera catalogue.

Settings:
    Resolved once at startup from environment variables into a validated
    pydantic model. Invalid values fail fast with a ValueError naming the
    offending variable.

Camera Catalogue:
    Cameras for auto-load come from CAMERA_1..4_URL/NAME/ID environment
    variables and, optionally, a YAML file (CAMERA_CONFIG) with a
    `cameras:` list. The catalogue is never written back.

Logging Strategy:
    DEBUG - Per-variable resolution, camera entries
    INFO  - Settings summary, catalogue size
    WARN  - Skipped camera entries, unreadable camera file
    ERROR - YAML parsing failures
"""
from __future__ import annotations

import io
import logging
import os
from pathlib import Path
from typing import Any, Final, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .utils.strings import mask_rtsp_credentials
from .utils.validation import validate_source_url, validate_stream_id

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

ENV_CAMERA_SLOTS: Final[int] = 4
"""Number of CAMERA_<n>_* environment slots scanned."""

CAMERAS_KEY: Final[str] = "cameras"
"""Top-level key of the camera YAML file."""

TRUE_VALUES: Final[frozenset[str]] = frozenset({"true", "1", "yes", "on"})


# ============================================================================
# Settings Model
# ============================================================================

class Settings(BaseModel):
    """Resolved service configuration."""

    max_concurrent_streams: int = Field(default=10, ge=1, le=1000)
    start_pacing_delay: float = Field(default=2.0, ge=0)
    hard_timeout: float = Field(default=300.0, ge=0, description="0 disables the hard timeout")
    hard_timeout_policy: Literal["renew", "fixed"] = "renew"
    readiness_poll_interval: float = Field(default=1.0, gt=0)
    readiness_timeout: float = Field(default=30.0, gt=0)
    health_poll_interval: float = Field(default=15.0, gt=0)
    stop_grace_period: float = Field(default=5.0, ge=0)
    cleanup_delay: float = Field(default=5.0, ge=0)
    output_root: Path = Path("./public/streams")
    output_url_prefix: str = "/streams"
    ffmpeg_binary: str = Field(default="ffmpeg", min_length=1)
    auto_load_cameras: bool = False
    auto_start_delay: float = Field(default=3.0, ge=0)
    auto_load_initial_delay: float = Field(default=2.0, ge=0)
    cameras_file: Path | None = None
    rate_limit_rps: float = Field(default=1.0, gt=0)
    rate_limit_burst: int = Field(default=10, ge=1)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    static_root: Path | None = Path("./public")

    @model_validator(mode="after")
    def validate_timeouts(self) -> Settings:
        """Readiness must resolve before the hard timeout can fire."""
        if self.hard_timeout > 0 and self.readiness_timeout >= self.hard_timeout:
            raise ValueError(
                f"READINESS_TIMEOUT ({self.readiness_timeout}) must be shorter "
                f"than STREAM_HARD_TIMEOUT ({self.hard_timeout})"
            )
        return self


# (env var, settings field, converter)
_ENV_SETTINGS: Final[tuple[tuple[str, str, str], ...]] = (
    ("MAX_CONCURRENT_STREAMS", "max_concurrent_streams", "int"),
    ("MULTI_CAMERA_DELAY", "start_pacing_delay", "ms"),
    ("STREAM_HARD_TIMEOUT", "hard_timeout", "float"),
    ("STREAM_TIMEOUT_POLICY", "hard_timeout_policy", "str"),
    ("READINESS_POLL_INTERVAL", "readiness_poll_interval", "float"),
    ("READINESS_TIMEOUT", "readiness_timeout", "float"),
    ("HEALTH_POLL_INTERVAL", "health_poll_interval", "float"),
    ("STOP_GRACE_PERIOD", "stop_grace_period", "float"),
    ("CLEANUP_DELAY", "cleanup_delay", "float"),
    ("HLS_OUTPUT_DIR", "output_root", "path"),
    ("FFMPEG_BINARY", "ffmpeg_binary", "str"),
    ("AUTO_LOAD_CAMERAS", "auto_load_cameras", "bool"),
    ("AUTO_START_DELAY", "auto_start_delay", "ms"),
    ("CAMERA_CONFIG", "cameras_file", "path"),
    ("API_RATE_LIMIT_RPS", "rate_limit_rps", "float"),
    ("API_RATE_LIMIT_BURST", "rate_limit_burst", "int"),
    ("CORS_ORIGINS", "cors_origins", "list"),
    ("STATIC_ROOT", "static_root", "path"),
)


def _convert(name: str, raw: str, kind: str) -> Any:
    value = raw.strip()
    try:
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
        if kind == "ms":
            return float(value) / 1000.0
        if kind == "bool":
            return value.lower() in TRUE_VALUES
        if kind == "path":
            return Path(value) if value else None
        if kind == "list":
            return [item.strip() for item in value.split(",") if item.strip()]
        return value.lower() if name == "STREAM_TIMEOUT_POLICY" else value
    except ValueError as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from e


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Resolve Settings from the environment.

    Args:
        environ: Mapping to read instead of os.environ (tests)

    Raises:
        ValueError: A variable is malformed or out of range
    """
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    sources: dict[str, str] = {}

    for var, field_name, kind in _ENV_SETTINGS:
        raw = env.get(var)
        if raw is None or (raw.strip() == "" and kind != "path"):
            continue
        values[field_name] = _convert(var, raw, kind)
        sources[field_name] = var
        logger.debug(f"Config {var}={raw!r}")

    try:
        settings = Settings(**values)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            field_name = err["loc"][0] if err["loc"] else None
            var = sources.get(field_name, field_name) if field_name else "configuration"
            problems.append(f"{var}: {err['msg']}")
        raise ValueError("Invalid configuration: " + "; ".join(problems)) from e

    logger.info(
        f"Config: max_streams={settings.max_concurrent_streams}, "
        f"hard_timeout={settings.hard_timeout}s ({settings.hard_timeout_policy}), "
        f"output_root={settings.output_root}"
    )
    return settings


# ============================================================================
# Camera Catalogue
# ============================================================================

class CameraConfig(BaseModel):
    """One configured camera (read-only)."""

    id: str
    name: str
    url: str

    @property
    def masked_url(self) -> str:
        return mask_rtsp_credentials(self.url)


def _camera_from_entry(entry: Any, origin: str) -> CameraConfig | None:
    if not isinstance(entry, dict):
        logger.warning(f"Skipping camera {origin}: expected mapping")
        return None

    camera_id = str(entry.get("id", "")).strip()
    url = str(entry.get("url", "")).strip()
    name = str(entry.get("name") or camera_id).strip()

    ok, reason = validate_stream_id(camera_id)
    if not ok:
        logger.warning(f"Skipping camera {origin}: {reason}")
        return None

    ok, reason = validate_source_url(url)
    if not ok:
        logger.warning(f"Skipping camera {origin} ({camera_id}): {reason}")
        return None

    logger.debug(f"Camera {camera_id} from {origin}: {mask_rtsp_credentials(url)}")
    return CameraConfig(id=camera_id, name=name, url=url)


def _cameras_from_env(env: Mapping[str, str]) -> list[CameraConfig]:
    cameras = []
    for slot in range(1, ENV_CAMERA_SLOTS + 1):
        url = env.get(f"CAMERA_{slot}_URL")
        camera_id = env.get(f"CAMERA_{slot}_ID")
        # A slot needs both URL and ID
        if not url or not camera_id:
            continue
        entry = {
            "id": camera_id,
            "name": env.get(f"CAMERA_{slot}_NAME") or f"Camera {slot}",
            "url": url,
        }
        camera = _camera_from_entry(entry, f"CAMERA_{slot}")
        if camera is not None:
            cameras.append(camera)
    return cameras


def _cameras_from_file(path: Path) -> list[CameraConfig]:
    try:
        with io.open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Camera file not found: {path}")
        return []
    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {path}: {e}")
        return []
    except OSError as e:
        logger.warning(f"Cannot read camera file {path}: {e}")
        return []

    if not isinstance(data, dict) or not isinstance(data.get(CAMERAS_KEY), list):
        logger.warning(f"Invalid camera file format (expected '{CAMERAS_KEY}' list): {path}")
        return []

    cameras = []
    for idx, entry in enumerate(data[CAMERAS_KEY]):
        camera = _camera_from_entry(entry, f"{path.name}[{idx}]")
        if camera is not None:
            cameras.append(camera)
    return cameras


def load_cameras(
    settings: Settings,
    environ: Mapping[str, str] | None = None
) -> list[CameraConfig]:
    """Collect the configured cameras, environment first.

    Later entries with an ID already seen are skipped.
    """
    env = os.environ if environ is None else environ
    candidates = _cameras_from_env(env)
    if settings.cameras_file is not None:
        candidates.extend(_cameras_from_file(settings.cameras_file))

    cameras: list[CameraConfig] = []
    seen: set[str] = set()
    for camera in candidates:
        if camera.id in seen:
            logger.warning(f"Skipping duplicate camera ID: {camera.id}")
            continue
        seen.add(camera.id)
        cameras.append(camera)

    logger.info(f"Camera catalogue: {len(cameras)} camera(s)")
    return cameras
