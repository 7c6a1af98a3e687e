# config.py
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .artifacts import DEFAULT_SCREENSHOT_DIR
from .errors import ConfigError

DEFAULT_MAX_INSTANCES = 5
UNLIMITED_SCREENSHOTS = -1


class RunConfig(BaseModel):
    """Everything a run can be configured with. Invalid values fail at construction."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    max_instances: int = Field(default=DEFAULT_MAX_INSTANCES, ge=1)
    groups: Optional[List[str]] = None
    min_frequency: Optional[Literal["low", "med", "high"]] = None
    no_debug: bool = False
    pause_on_fail: bool = False
    headless: Optional[bool] = None
    selenium_server: Optional[str] = None
    step_data: Literal["all", "fail", "none"] = "all"
    max_screenshots: int = Field(default=UNLIMITED_SCREENSHOTS, ge=UNLIMITED_SCREENSHOTS)
    no_report: bool = False
    report_path: str = "report.json"
    rerun_not_passed: bool = False  # only branches that did not pass in the report at report_path
    screenshot_dir: str = DEFAULT_SCREENSHOT_DIR

    @field_validator("groups", mode="before")
    @classmethod
    def _split_groups(cls, v: Any) -> Any:
        # "one, two" and ["one", "two"] are both accepted
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            v = [str(g).strip() for g in v if str(g).strip()]
            return v or None
        return v

    @classmethod
    def build(cls, **values: Any) -> "RunConfig":
        """Construct, turning pydantic's ValidationError into a ConfigError."""
        try:
            return cls(**values)
        except ValidationError as e:
            err = e.errors()[0]
            field = ".".join(str(p) for p in err.get("loc", ())) or "config"
            raise ConfigError(field=field, message=err.get("msg", str(e))) from e

    @classmethod
    def from_flags(cls, flags: Dict[str, Optional[str]]) -> "RunConfig":
        """
        Build from raw `--name=value` style flags (keys may use dashes).

        A flag given without a value (None or "") counts as true for booleans.
        """
        values: Dict[str, Any] = {}
        for raw_name, raw_value in flags.items():
            name = raw_name.lstrip("-").replace("-", "_")
            if name not in cls.model_fields:
                raise ConfigError(field=name, message="unknown flag")

            if name in ("no_debug", "pause_on_fail", "no_report", "headless", "rerun_not_passed"):
                values[name] = _parse_bool(name, raw_value)
            else:
                values[name] = raw_value
        return cls.build(**values)


def _parse_bool(name: str, raw: Optional[str]) -> bool:
    if raw is None or raw == "" or raw.lower() == "true":
        return True
    if raw.lower() == "false":
        return False
    raise ConfigError(field=name, message=f"must be true or false, got {raw!r}")
