from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound


def _format_timestamp(value: Any) -> str:
    if value in (None, ""):
        return "—"
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return str(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%d-%b-%Y %H:%M:%S")


def _tydex_number(value: Any, precision: int = 6) -> str:
    """Render numeric row inputs the way TYDEX headers expect them."""
    if value in (None, ""):
        return "0"
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value)
    if number.is_integer():
        return str(int(number))
    return f"{number:.{precision}g}"


_environments: Dict[Path, Environment] = {}


def get_tydex_environment(template_dir: Path) -> Environment:
    resolved = template_dir.resolve()
    env = _environments.get(resolved)
    if env is None:
        env = Environment(
            loader=FileSystemLoader(str(resolved)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        env.filters["format_ts"] = _format_timestamp
        env.filters["tydex_number"] = _tydex_number
        _environments[resolved] = env
    return env


def render_tydex(template_dir: Path, template_name: str, context: Dict[str, Any]) -> str:
    env = get_tydex_environment(template_dir)
    try:
        template = env.get_template(template_name)
    except TemplateNotFound as exc:
        raise FileNotFoundError(f"Tydex template '{template_name}' not found in {template_dir}") from exc
    return template.render(**context)
