"""Simulation configuration templates.

A template is a configuration file with ``{{variable}}`` placeholders plus
optional variable definitions. Templates live in a directory as TOML files::

    # templates/equilibration.toml
    name = "Equilibration"
    description = "NPT equilibration run"
    body = '''
    structure      {{structure_file}}
    temperature    {{temperature}}
    '''

    [variables.temperature]
    type = "number"
    minimum = 200
    maximum = 400
    default = 300

    [variables.structure_file]
    type = "file"
    extensions = [".psf"]
"""

from __future__ import annotations

import abc
import logging
import os
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .config import TOMLDecodeError, tomllib
from .errors import ValidationError

logger = logging.getLogger(__name__)

INPUT_FILES_DIRNAME = "input_files"

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_TEMPLATE_ID = re.compile(r"^[A-Za-z0-9_\-]+$")
_VARIABLE_TYPES = ("text", "number", "boolean", "file")


@dataclass
class VariableDefinition:
    key: str
    type: str = "text"
    label: Optional[str] = None
    default: Any = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    extensions: List[str] = field(default_factory=list)
    help_text: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in _VARIABLE_TYPES:
            raise ValidationError(
                f"Variable {self.key!r} has unknown type {self.type!r}; "
                f"expected one of {', '.join(_VARIABLE_TYPES)}"
            )


@dataclass
class Template:
    id: str
    body: str
    name: str = ""
    description: str = ""
    variables: Dict[str, VariableDefinition] = field(default_factory=dict)

    def placeholders(self) -> List[str]:
        """Placeholder names in order of first appearance."""
        return list(dict.fromkeys(_PLACEHOLDER.findall(self.body)))

    def render(self, values: Mapping[str, Any]) -> str:
        return render_template(self, values)


def _format_value(definition: VariableDefinition, value: Any) -> str:
    key = definition.key
    if definition.type == "file":
        if not isinstance(value, (str, os.PathLike)) or not str(value).strip():
            raise ValidationError(f"Variable {key} must be a file name")
        filename = os.path.basename(os.fspath(value))
        if definition.extensions and not any(
            filename.lower().endswith(ext.lower()) for ext in definition.extensions
        ):
            raise ValidationError(
                f"Variable {key} expects a file ending in {', '.join(definition.extensions)}"
            )
        return posixpath.join(INPUT_FILES_DIRNAME, filename)

    if definition.type == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Variable {key} must be a number")
        if definition.minimum is not None and value < definition.minimum:
            raise ValidationError(f"Variable {key} must be >= {definition.minimum}")
        if definition.maximum is not None and value > definition.maximum:
            raise ValidationError(f"Variable {key} must be <= {definition.maximum}")
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)

    if definition.type == "boolean":
        if not isinstance(value, bool):
            raise ValidationError(f"Variable {key} must be a boolean")
        return "yes" if value else "no"

    return _format_text(key, value)


def _format_text(key: str, value: Any) -> str:
    text = str(value)
    if "\n" in text or "\r" in text or "\0" in text:
        raise ValidationError(f"Variable {key} must be a single line")
    return text


def render_template(template: Template, values: Mapping[str, Any]) -> str:
    """Substitute ``values`` into ``template``.

    Defined variables fall back to their default; a defined variable with
    neither a value nor a default is an error, as is any placeholder left
    unreplaced at the end.

    Raises:
        ValidationError: A value is missing or has the wrong type.
    """
    rendered_values: Dict[str, str] = {}
    for key, definition in template.variables.items():
        value = values.get(key, definition.default)
        if value is None:
            raise ValidationError(f"Missing required variable: {key}")
        rendered_values[key] = _format_value(definition, value)

    for key, value in values.items():
        if key not in rendered_values and value is not None:
            rendered_values[key] = _format_text(key, value)

    def substitute(match: "re.Match[str]") -> str:
        return rendered_values.get(match.group(1), match.group(0))

    rendered = _PLACEHOLDER.sub(substitute, template.body)
    unreplaced = list(dict.fromkeys(_PLACEHOLDER.findall(rendered)))
    if unreplaced:
        raise ValidationError(
            f"Template {template.id} contains unreplaced variables: {', '.join(unreplaced)}"
        )
    return rendered


def coerce_string_values(template: Template, values: Mapping[str, str]) -> Dict[str, Any]:
    """Convert command-line strings to the types the template declares."""
    coerced: Dict[str, Any] = {}
    for key, raw in values.items():
        definition = template.variables.get(key)
        if definition is None or definition.type in ("text", "file"):
            coerced[key] = raw
        elif definition.type == "number":
            try:
                number = float(raw)
            except ValueError:
                raise ValidationError(f"Variable {key} must be a number, got {raw!r}") from None
            coerced[key] = int(number) if number.is_integer() and "." not in raw else number
        else:
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                coerced[key] = True
            elif lowered in ("0", "false", "no", "off"):
                coerced[key] = False
            else:
                raise ValidationError(f"Variable {key} must be a boolean, got {raw!r}")
    return coerced


def template_from_dict(template_id: str, data: Mapping[str, Any]) -> Template:
    if not _TEMPLATE_ID.match(template_id or ""):
        raise ValidationError(f"Invalid template id: {template_id!r}")
    body = data.get("body")
    if not isinstance(body, str) or not body.strip():
        raise ValidationError(f"Template {template_id} has no body")
    variables = {}
    for key, spec in (data.get("variables") or {}).items():
        if not isinstance(spec, Mapping):
            raise ValidationError(f"Variable {key} in template {template_id} must be a table")
        variables[key] = VariableDefinition(
            key=key,
            type=spec.get("type", "text"),
            label=spec.get("label"),
            default=spec.get("default"),
            minimum=spec.get("minimum"),
            maximum=spec.get("maximum"),
            extensions=list(spec.get("extensions") or []),
            help_text=spec.get("help_text"),
        )
    return Template(
        id=template_id,
        body=body,
        name=data.get("name", template_id),
        description=data.get("description", ""),
        variables=variables,
    )


class TemplateStore(abc.ABC):
    """Where the engine looks up templates by id."""

    @abc.abstractmethod
    def get(self, template_id: str) -> Template:
        """Return the template or raise :class:`ValidationError` if unknown."""

    @abc.abstractmethod
    def list_templates(self) -> List[Template]:
        """Return every available template."""


class MemoryTemplateStore(TemplateStore):
    def __init__(self, templates: Optional[Mapping[str, Template]] = None):
        self._templates: Dict[str, Template] = dict(templates or {})

    def add(self, template: Template) -> None:
        self._templates[template.id] = template

    def get(self, template_id: str) -> Template:
        try:
            return self._templates[template_id]
        except KeyError:
            raise ValidationError(f"Unknown template: {template_id}") from None

    def list_templates(self) -> List[Template]:
        return [self._templates[key] for key in sorted(self._templates)]


class FileTemplateStore(TemplateStore):
    """Templates stored as ``<directory>/<template_id>.toml``."""

    def __init__(self, directory: os.PathLike | str):
        self.directory = Path(directory).expanduser()

    def get(self, template_id: str) -> Template:
        if not _TEMPLATE_ID.match(template_id or ""):
            raise ValidationError(f"Invalid template id: {template_id!r}")
        path = self.directory / f"{template_id}.toml"
        if not path.is_file():
            raise ValidationError(f"Unknown template: {template_id} (looked in {self.directory})")
        try:
            with path.open("rb") as handle:
                data = tomllib.load(handle)
        except TOMLDecodeError as e:
            raise ValidationError(f"Template file {path} is not valid TOML: {e}") from e
        return template_from_dict(template_id, data)

    def list_templates(self) -> List[Template]:
        if not self.directory.is_dir():
            return []
        templates = []
        for path in sorted(self.directory.glob("*.toml")):
            try:
                templates.append(self.get(path.stem))
            except ValidationError as e:
                logger.warning("Skipping template %s: %s", path.name, e)
        return templates
