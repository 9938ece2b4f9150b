"""
Operator input collection.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import click
import yaml


def collect(prompt: str, default: Optional[str] = None, hide_input: bool = False) -> str:
    """
    Ask the operator for a value.

    Empty input returns the default when one is given; without a default the
    prompt repeats until something non-blank is entered.
    """
    while True:
        value = click.prompt(
            prompt,
            default=default if default is not None else "",
            show_default=default is not None,
            hide_input=hide_input,
        )
        value = (value or "").strip()
        if value:
            return value
        if default is not None:
            return default


def confirm(prompt: str, default: bool = False) -> bool:
    return click.confirm(prompt, default=default)


def load_answers(path: Optional[str]) -> Dict[str, Any]:
    """
    Load pre-supplied answers from a YAML file.

    Recognised keys: domain, admin_email, db_password, supervisor.
    """
    if not path:
        return {}
    with open(Path(path), "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a mapping", param_hint="--answers")
    return {str(k).replace("-", "_"): v for k, v in data.items()}
