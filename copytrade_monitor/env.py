"""Environment layer of the configuration.

Precedence, lowest first: ``Config`` defaults, the env file, the process
environment, CLI flags. The env file never replaces a variable that is
already exported, and every variable the monitor reads is declared once as
an ``EnvVar`` row in ``config.ENV_VARS``.
"""
from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

log = logging.getLogger(__name__)

DEFAULT_ENV_FILE = ".env.copytrade.local"

_BOOL_WORDS = {
    "1": True, "true": True, "yes": True, "y": True, "on": True,
    "0": False, "false": False, "no": False, "n": False, "off": False,
}


@dataclass(frozen=True, slots=True)
class EnvVar:
    """One environment variable bound to a ``Config`` attribute."""
    name: str
    field: str
    kind: type = str          # str, int, float or bool


# ──────────────────────────────────────────────────────────────
# Env file
# ──────────────────────────────────────────────────────────────

def _clean_value(raw: str) -> str:
    text = raw.strip()
    if text[:1] in ("'", '"'):
        end = text.find(text[0], 1)
        if end > 0:
            return text[1:end]
    comment = text.find(" #")
    if comment >= 0:
        text = text[:comment].rstrip()
    return text


def read_env_file(path: str) -> Dict[str, str]:
    """``NAME=value`` pairs from ``path``; a missing file yields ``{}``.

    Accepts an ``export`` prefix, single or double quotes and a trailing
    `` # comment`` on unquoted values. Malformed lines are logged with their
    line number and skipped.
    """
    target = Path(path)
    if not target.is_file():
        return {}
    values: Dict[str, str] = {}
    lines = target.read_text(encoding="utf-8").splitlines()
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        name, sep, value = line.partition("=")
        name = name.strip()
        if not sep or not name.replace("_", "").isalnum():
            log.warning("%s:%d: not a NAME=value line, ignored", path, lineno)
            continue
        values[name] = _clean_value(value)
    return values


def load_env_file(path: str, *, override: bool = False) -> List[str]:
    """Export the file's values into ``os.environ``; returns the names applied."""
    applied: List[str] = []
    for name, value in read_env_file(path).items():
        if name in os.environ and not override:
            continue
        os.environ[name] = value
        applied.append(name)
    if applied:
        log.debug("env file %s: applied %s", path, ", ".join(applied))
    return applied


def env_file_from_argv(argv: Optional[Sequence[str]]) -> str:
    """Env file chosen by ``--env-file``, then ``ENV_FILE``, then the default."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default=None)
    known, _ = pre.parse_known_args(argv)
    chosen = known.env_file or os.environ.get("ENV_FILE") or DEFAULT_ENV_FILE
    return chosen.strip() or DEFAULT_ENV_FILE


# ──────────────────────────────────────────────────────────────
# Typed overrides
# ──────────────────────────────────────────────────────────────

def _convert(kind: type, text: str) -> Any:
    if kind is bool:
        flag = _BOOL_WORDS.get(text.lower())
        if flag is None:
            raise ValueError(text)
        return flag
    return kind(text)


def read_overrides(table: Sequence[EnvVar],
                   environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """``{field: value}`` for every variable in ``table`` that is set.

    Blank values count as unset. A value that does not convert is logged
    and skipped, so the field keeps its default.
    """
    env = os.environ if environ is None else environ
    out: Dict[str, Any] = {}
    for var in table:
        text = (env.get(var.name) or "").strip()
        if not text:
            continue
        try:
            out[var.field] = _convert(var.kind, text)
        except ValueError:
            log.warning("ignoring %s=%r (expected %s)", var.name, text, var.kind.__name__)
    return out
