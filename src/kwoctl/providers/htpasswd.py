"""Generate bcrypt htpasswd entries through the Apache ``htpasswd`` tool."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass


class HtpasswdError(RuntimeError):
    """Raised when an htpasswd entry cannot be generated."""


@dataclass(slots=True)
class HtpasswdProvider:
    """Wrap ``htpasswd -Bbn`` to produce registry auth lines."""

    htpasswd_bin: str = "htpasswd"

    def generate(self, username: str, password: str) -> str:
        """Return a single ``user:hash`` line for *username*."""
        try:
            result = subprocess.run(  # noqa: S603, S607
                [self.htpasswd_bin, "-Bbn", username, password],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise HtpasswdError(
                f"{self.htpasswd_bin} not found (install apache2-utils): {exc}"
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise HtpasswdError(f"htpasswd failed (exit {result.returncode}): {message}")
        line = next((item for item in result.stdout.splitlines() if item.strip()), "")
        if not line.startswith(f"{username}:"):
            raise HtpasswdError("htpasswd produced an unexpected entry.")
        return line.strip()


__all__ = ["HtpasswdError", "HtpasswdProvider"]
