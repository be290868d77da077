"""
Best-effort extraction of generation parameters from sidecar text.

Sidecar files are the web UI's own "infotext": the positive prompt, an
optional ``Negative prompt: ...`` line, then a loose ``Key: value, Key: value``
settings block. Nothing is escaped, so every field is pulled out on its own
and one unparseable field never prevents reading the others.
"""

from __future__ import annotations

import json
import math
import re

NEGATIVE_PROMPT_LABEL = "Negative prompt: "
SETTINGS_LABEL = "Steps: "

# A label only counts when it starts the text or follows one of these.
_LABEL_BOUNDARY = r"(?:^|(?<=, )|(?<=\n)|(?<=\r)|(?<=\{))"


class ParamParseError(ValueError):
    """A required field is missing or holds an unusable value."""


def _coerce_number(name: str, value: str) -> int | float:
    text = value.strip()
    if not text:
        raise ParamParseError(f'Received empty value when parsing "{name}"')
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError as exc:
        raise ParamParseError(f'Received NaN when parsing "{name}": {text!r}') from exc
    if math.isnan(number):
        raise ParamParseError(f'Received NaN when parsing "{name}"')
    return number


def parse_field(
    text: str,
    name: str,
    *,
    numeric: bool = False,
    optional: bool = False,
    end: str = ",",
    start: str = ": ",
) -> str | int | float | None:
    """
    Return the value between ``"<name><start>"`` and the next ``end``.

    The value runs to the end of the text when ``end`` does not occur again.
    With the default ``","`` a line break also ends the value.
    Absent optional fields return ``None``; absent required fields raise
    ``ParamParseError``.
    """
    match = re.search(_LABEL_BOUNDARY + re.escape(f"{name}{start}"), text, re.MULTILINE)
    if match is None:
        if optional:
            return None
        raise ParamParseError(f'Param "{name}" not found in generation parameters')

    value_start = match.end()
    if end == ",":
        ends = [index for index in (text.find(c, value_start) for c in ",\r\n") if index >= 0]
        value_end = min(ends, default=-1)
    else:
        value_end = text.find(end, value_start) if end else -1
    raw = text[value_start:] if value_end < 0 else text[value_start:value_end]
    value = raw.strip(" \t\r\n")

    if numeric:
        return _coerce_number(name, value)
    return value


def parse_int_field(text: str, name: str, *, optional: bool = False) -> int | None:
    value = parse_field(text, name, numeric=True, optional=optional)
    if value is None:
        return None
    if isinstance(value, float):
        if not value.is_integer():
            raise ParamParseError(f'Expected an integer for "{name}", got {value}')
        return int(value)
    return value


def split_prompts(text: str) -> tuple[str, str, str]:
    """
    Split sidecar text into ``(prompt, negative_prompt, settings)``.

    The settings block starts at the first ``Steps: `` label; the negative
    prompt sits between ``Negative prompt: `` and that label.
    """
    settings_start = text.find(SETTINGS_LABEL)
    if settings_start < 0:
        raise ParamParseError(f'Settings block ("{SETTINGS_LABEL.strip()}") not found')

    negative_start = text.find(NEGATIVE_PROMPT_LABEL, 0, settings_start)
    if negative_start < 0:
        negative_start = settings_start

    prompt = text[:negative_start].rstrip("\r\n")
    negative_prompt = (
        text[negative_start:settings_start]
        .removeprefix(NEGATIVE_PROMPT_LABEL)
        .rstrip("\r\n")
    )
    return prompt, negative_prompt, text[settings_start:]


def parse_size(settings: str) -> tuple[int, int]:
    raw = str(parse_field(settings, "Size"))
    parts = raw.lower().split("x")
    if len(parts) != 2:
        raise ParamParseError(f"Invalid size: {raw!r}")
    width = _coerce_number("Size", parts[0])
    height = _coerce_number("Size", parts[1])
    if not isinstance(width, int) or not isinstance(height, int) or width <= 0 or height <= 0:
        raise ParamParseError(f"Invalid size: {raw!r}")
    return width, height


def parse_bool_field(settings: str, name: str) -> bool | None:
    value = parse_field(settings, name, optional=True)
    if value is None:
        return None
    return str(value).strip().lower() == "true"


def parse_cutoff_targets(settings: str) -> list[str]:
    """
    Read the Cutoff extension's target list.

    The extension writes a Python list repr (single quotes), so quotes are
    normalized before JSON parsing; a plain comma split is the fallback.
    """
    raw = parse_field(settings.replace('"', ""), "Cutoff targets", optional=True, end="],")
    if raw is None:
        return []
    text = str(raw).split("\n")[0].rstrip()
    if not text.endswith("]"):
        text += "]"
    text = text.replace("'", '"')

    try:
        targets = json.loads(text)
    except json.JSONDecodeError:
        targets = None

    if isinstance(targets, list):
        return [str(target).strip() for target in targets if str(target).strip()]

    return [part.strip() for part in re.sub(r"[\[\]]", "", text).replace('"', "").split(",")
            if part.strip()]


def parse_vae(settings: str) -> str | None:
    value = parse_field(settings, "VAE hash", optional=True)
    if value is None:
        value = parse_field(settings, '"vae"', optional=True, end='"', start=': "')
    return str(value) if value else None


def parse_templates(settings: str) -> tuple[str | None, str | None]:
    template = parse_field(settings, "Template", optional=True, end="Negative Template")
    negative_template = parse_field(settings, "Negative Template", optional=True, end="\r")
    return (
        str(template) if template else None,
        str(negative_template) if negative_template else None,
    )


def has_face_restoration(settings: str) -> bool:
    return "Face restoration" in settings
