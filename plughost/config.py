"""Host options — loads and validates plughost.yaml with Pydantic."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, field_validator

# Feature flags that each hosting mode forces on. Injected configuration can
# never switch these off.
FORCED_FLAGS: dict[str, dict[str, bool]] = {
    "cli": {"prevent_focus_disruption": True},
}

DEFAULT_FLAGS: dict[str, bool] = {
    "prevent_focus_disruption": False,
    "morph_fast_apply": False,
    "multi_file_apply_diff": False,
    "power_steering": False,
    "image_generation": False,
    "run_slash_command": False,
}


class Identity(BaseModel):
    """Identity reported to the plugin through the host API's ``env``."""

    machine_id: str = ""
    session_id: str = ""
    app_name: str = "plughost"


class Tuning(BaseModel):
    """Tuned constants of the message bridge and fault monitor."""

    readiness_cooldown_seconds: float = 1.0
    dedup_cache_size: int = 100
    dedup_evict_count: int = 50
    dedup_payload_chars: int = 50
    dedup_window_ms: int = 1
    max_errors_before_warning: int = 10

    @field_validator("dedup_window_ms", "dedup_cache_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class HostOptions(BaseModel):
    """Options for hosting one plugin.

    ``plugin_path`` points at the plugin's entry file or package directory;
    ``extension_path`` is the root the plugin resolves its assets against
    and defaults to the directory holding the entry point.
    """

    plugin_path: str
    workspace_path: str = "."
    extension_path: str = ""
    host_api_name: str = "hostapi"
    render_surface_id: str = "sidebar"
    hosting_mode: str = "cli"
    mode: str = "code"
    custom_modes: list[dict] = []
    append_system_prompt: str = ""
    identity: Identity = Identity()
    record_faults: bool = True
    tuning: Tuning = Tuning()

    @field_validator("host_api_name")
    @classmethod
    def _module_name(cls, v: str) -> str:
        if not v or not all(part.isidentifier() for part in v.split(".")):
            raise ValueError(f"host_api_name must be an importable module name, got {v!r}")
        return v

    def plugin_file(self) -> Path:
        """Return the resolved plugin entry point."""
        return Path(self.plugin_path).resolve()

    def workspace(self) -> Path:
        """Return the resolved workspace directory."""
        return Path(self.workspace_path).resolve()

    def extension_root(self) -> Path:
        """Return the resolved extension asset root."""
        if self.extension_path:
            return Path(self.extension_path).resolve()
        plugin = self.plugin_file()
        return plugin if plugin.is_dir() else plugin.parent

    def feature_flags(self) -> dict[str, bool]:
        """Return the initial feature flags for the hosting mode."""
        return {**DEFAULT_FLAGS, **FORCED_FLAGS.get(self.hosting_mode, {})}

    def forced_flags(self) -> dict[str, bool]:
        return dict(FORCED_FLAGS.get(self.hosting_mode, {}))


def load_options(path: Path | str = "plughost.yaml", **overrides: object) -> HostOptions:
    """Load and validate a host options file.

    Args:
        path: Path to the YAML options file.
        **overrides: Top-level values that replace the file's values
            (``None`` values are ignored).

    Returns:
        A validated HostOptions instance.

    Raises:
        FileNotFoundError: If the options file does not exist.
        ValueError: If the options file contains invalid configuration.
    """
    options_path = Path(path)
    if not options_path.exists():
        raise FileNotFoundError(f"Options file not found: {options_path}")

    text = options_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)

    if data is None:
        raise ValueError(f"Options file is empty: {options_path}")
    if not isinstance(data, dict):
        raise ValueError(f"Options file must contain a YAML mapping: {options_path}")

    data.update({key: value for key, value in overrides.items() if value is not None})
    return HostOptions(**data)
