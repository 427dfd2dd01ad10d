# src/hashiprov/provision/render.py
"""
Config text for consul.hcl, vault.hcl and systemd units.

Every value reaches the output through a filter that either escapes it for
the target syntax or rejects it, so operator-supplied strings cannot open new
blocks, directives or interpolations in the generated files.
"""
from __future__ import annotations

import dataclasses
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined, UndefinedError

from hashiprov.config.models import ConsulSettings, VaultSettings
from hashiprov.errors import ConfigRenderError

from .models import ManagedService

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_SYSTEMD_BARE = re.compile(r"^[A-Za-z0-9_@+=:,./-]+$")
_SYSTEMD_UNIT = re.compile(r"^[A-Za-z0-9_@:.\\-]+$")
RESTART_POLICIES = {"no", "always", "on-success", "on-failure", "on-abnormal", "on-abort", "on-watchdog"}

Settings = Union[ConsulSettings, VaultSettings, ManagedService]


def _reject_control(value: str, what: str) -> str:
    if not isinstance(value, str):
        raise ConfigRenderError(f"{what} must be a string, got {type(value).__name__}")
    if _CONTROL_CHARS.search(value):
        raise ConfigRenderError(f"{what} contains control characters: {value!r}")
    return value


def hcl_string(value: Any) -> str:
    value = _reject_control(value, "HCL string")
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("${", "$${")
        .replace("%{", "%%{")
    )
    return f'"{escaped}"'


def hcl_bool(value: Any) -> str:
    if not isinstance(value, bool):
        raise ConfigRenderError(f"expected a boolean, got {value!r}")
    return "true" if value else "false"


def hcl_int(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigRenderError(f"expected an integer, got {value!r}")
    return str(value)


def systemd_value(value: Any) -> str:
    value = _reject_control(value, "unit value")
    return value.replace("%", "%%")


def systemd_unit_name(value: Any) -> str:
    """One entry of a space-separated unit list (After=, WantedBy=)."""
    value = _reject_control(value, "unit name")
    if not _SYSTEMD_UNIT.match(value):
        raise ConfigRenderError(f"invalid unit name: {value!r}")
    return value


def systemd_arg(value: Any) -> str:
    """Quote one ExecStart argument."""
    value = _reject_control(value, "ExecStart argument")
    value = value.replace("%", "%%").replace("$", "$$")
    if _SYSTEMD_BARE.match(value):
        return value
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def systemd_restart(value: Any) -> str:
    if value not in RESTART_POLICIES:
        raise ConfigRenderError(f"invalid Restart= policy: {value!r}")
    return value


class TemplateRenderer:
    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters.update(
            hcl_string=hcl_string,
            hcl_bool=hcl_bool,
            hcl_int=hcl_int,
            systemd_value=systemd_value,
            systemd_arg=systemd_arg,
            systemd_unit_name=systemd_unit_name,
            systemd_restart=systemd_restart,
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        tmpl = self.env.get_template(template_name)
        try:
            return tmpl.render(**context)
        except UndefinedError as exc:
            raise ConfigRenderError(f"{template_name}: {exc}") from exc


@lru_cache(maxsize=1)
def _default_renderer() -> TemplateRenderer:
    return TemplateRenderer()


_KINDS = {
    "consul": ("consul.hcl.j2", ConsulSettings),
    "vault": ("vault.hcl.j2", VaultSettings),
    "systemd": ("systemd.service.j2", ManagedService),
}


def _context(settings: Settings) -> Dict[str, Any]:
    if isinstance(settings, ManagedService):
        ctx = dataclasses.asdict(settings)
        ctx["exec_start"] = settings.exec_start
        return ctx
    return settings.model_dump()


def render(kind: str, settings: Settings) -> str:
    """
    Render the config text for *kind* ("consul", "vault" or "systemd").

    Pure: no I/O, and the same settings always produce the same text.
    """
    try:
        template_name, expected = _KINDS[kind]
    except KeyError:
        raise ConfigRenderError(f"unknown config kind: {kind!r}") from None
    if not isinstance(settings, expected):
        raise ConfigRenderError(
            f"{kind} config needs {expected.__name__}, got {type(settings).__name__}"
        )
    return _default_renderer().render(template_name, _context(settings))
