"""CLI defaults from `configs/`.

Each CLI reads one file from `configs/` next to `pyproject.toml` (JSON, or
YAML when `pyyaml` is installed), picks its own section and turns it into
argv tokens placed before the user's arguments, so explicit flags win::

    {"anneal": {"time_budget": 30, "use_bonus": ["GLOBALIST:12"]},
     "solve": {"workers": 8, "retry": {"max_attempts": 3}}}

Nested keys are joined with '_' (`retry.max_attempts` -> `--retry-max-attempts`),
`true` becomes a bare flag, and a list repeats its flag once per item (the
`--use-bonus` style). A file of the form `{"args": [...]}` is used verbatim.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Iterable


def find_config(filename: str) -> Path | None:
    """`configs/<filename>` under the closest ancestor of the cwd holding `pyproject.toml`."""
    cwd = Path.cwd().resolve()
    root = next((d for d in (cwd, *cwd.parents) if (d / "pyproject.toml").is_file()), cwd)
    path = root / "configs" / filename
    return path if path.is_file() else None


def read_config(path: Path) -> dict[str, Any]:
    path = Path(path)
    raw = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        try:
            import yaml  # type: ignore[import-not-found]
        except Exception as exc:  # pragma: no cover
            raise SystemExit(f"YAML config requires pyyaml: {exc}") from exc
        data = yaml.safe_load(raw)
    else:
        data = json.loads(raw)
    if not isinstance(data, dict):
        raise TypeError(f"{path}: expected a mapping at top-level, got {type(data).__name__}")
    return data


def _tokens(name: str, value: Any) -> list[str]:
    if isinstance(value, dict):
        return [tok for key, sub in value.items() for tok in _tokens(f"{name}_{key}", sub)]
    flag = "--" + name.strip().replace("_", "-")
    if value is None or value is False:
        return []
    if value is True:
        return [flag]
    if isinstance(value, (list, tuple)):
        return [tok for item in value for tok in (flag, str(item))]
    return [flag, str(value)]


def config_to_argv(config_path: Path, *, section_keys: Iterable[str] = ()) -> list[str]:
    """Argv tokens for the first of `section_keys` present in the file (else the whole file).

    Raises:
        TypeError: If the file (or its `args`) has the wrong shape.
        ValueError: If a literal `args` list tries to load another config.
    """
    data = read_config(config_path)
    if "args" in data:
        if not isinstance(data["args"], list):
            raise TypeError(f"{config_path}: 'args' must be a list")
        argv = [str(x) for x in data["args"]]
        if any(tok == "--config" or tok.startswith("--config=") for tok in argv):
            raise ValueError(f"{config_path}: 'args' must not include --config")
        return argv
    section = next((data[k] for k in section_keys if isinstance(data.get(k), dict)), data)
    return [tok for key, value in section.items() if key not in {"config", "args"} for tok in _tokens(str(key), value)]


def argv_with_config(
    argv: list[str],
    *,
    default_filename: str,
    section_keys: Iterable[str],
) -> tuple[list[str], Path | None]:
    """Prepend config tokens to `argv`.

    `--config F` picks the file, `--no-config` disables the default
    `configs/<default_filename>`.
    """
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", type=Path, default=None)
    pre.add_argument("--no-config", action="store_true")
    pre_args, _ = pre.parse_known_args(argv)
    if pre_args.no_config and pre_args.config is not None:
        raise SystemExit("Use either --config or --no-config, not both.")
    path = None if pre_args.no_config else (pre_args.config or find_config(default_filename))
    if path is None:
        return list(argv), None
    return config_to_argv(path, section_keys=section_keys) + list(argv), path
