"""Jinja2 template engine with operator overrides.

Packaged templates live next to this module. Operators may shadow any of them
by placing a file with the same relative path under ``templates_dir`` (by
default ``/etc/kwo/templates``).
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
)

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be rendered or written."""


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged templates, preferring operator overrides."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine searching *override_dir* before the built-ins."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES_DIR)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        environment.filters["quote"] = _quote
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template {name}: {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o640,
    ) -> bool:
        """Render *name* into *destination*; return True when content changed."""
        rendered = self.render_to_string(name, context)
        if destination.exists():
            try:
                if destination.read_text(encoding="utf-8") == rendered:
                    os.chmod(destination, mode)
                    return False
            except OSError:
                pass

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(destination.parent), prefix=f".{destination.name}."
            )
        except OSError as exc:
            raise TemplateRenderError(f"Failed to write {destination}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        except OSError as exc:
            raise TemplateRenderError(f"Failed to write {destination}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


def _quote(value: object) -> str:
    """Render *value* as a double-quoted YAML scalar."""
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


__all__ = ["TemplateEngine", "TemplateRenderError"]
