"""Jinja2 template rendering with operator overrides.

Built-in templates ship inside this package. Files placed under the
configured ``templates_dir`` with the same relative name shadow them.
"""
from __future__ import annotations

import os
import shlex
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
)


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be rendered or written."""


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in or overridden templates."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates from *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("ptunnelctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        environment.filters["quote"] = shlex.quote
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
            return template.render(**dict(context))
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template {name}: {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``False`` when nothing changed."""
        content = self.render_to_string(name, context)
        if destination.exists():
            try:
                current = destination.read_text(encoding="utf-8")
            except OSError:
                current = None
            if current == content:
                if (destination.stat().st_mode & 0o777) != mode:
                    os.chmod(destination, mode)
                return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        except OSError as exc:
            raise TemplateRenderError(f"Failed to write {destination}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine", "TemplateRenderError"]
