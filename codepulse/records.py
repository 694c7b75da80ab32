"""Typed heartbeat record and boundary validation of client payloads."""

from dataclasses import dataclass, replace
from typing import Optional

from .errors import ValidationError

_OPTIONAL_STR_FIELDS = ('project', 'language', 'branch', 'category', 'machine_name')
_OPTIONAL_INT_FIELDS = ('lines', 'line_additions', 'line_deletions')


@dataclass(frozen=True)
class Heartbeat:
    """One activity ping from an editor plugin.

    ``user_id`` is None until the ingestor stamps the record with the user
    resolved from the request credential. ``project_id`` is filled in once the
    project name has been upserted.
    """

    entity: str
    time: float
    type: str = 'file'
    user_id: Optional[str] = None
    project: Optional[str] = None
    project_id: Optional[int] = None
    language: Optional[str] = None
    branch: Optional[str] = None
    category: Optional[str] = None
    is_write: bool = False
    lines: Optional[int] = None
    line_additions: Optional[int] = None
    line_deletions: Optional[int] = None
    machine_name: Optional[str] = None
    dependencies: Optional[str] = None

    def stamped(self, user_id):
        return replace(self, user_id=user_id)

    def with_project_id(self, project_id):
        return replace(self, project_id=project_id)


def parse_heartbeat(data, index=0):
    """Validate one decoded JSON object and build a Heartbeat."""
    if not isinstance(data, dict):
        raise ValidationError(f"heartbeat[{index}] must be an object")

    entity = data.get('entity')
    if not isinstance(entity, str) or not entity:
        raise ValidationError(f"heartbeat[{index}] missing required field 'entity'")

    time_value = data.get('time')
    if isinstance(time_value, bool) or not isinstance(time_value, (int, float)):
        raise ValidationError(f"heartbeat[{index}] missing required numeric field 'time'")
    if time_value < 0:
        raise ValidationError(f"heartbeat[{index}] has negative 'time'")

    kwargs = {'entity': entity, 'time': float(time_value)}

    hb_type = data.get('type')
    if hb_type is not None:
        if not isinstance(hb_type, str):
            raise ValidationError(f"heartbeat[{index}] field 'type' must be a string")
        kwargs['type'] = hb_type

    for name in _OPTIONAL_STR_FIELDS:
        value = data.get(name)
        if value is None or value == '':
            continue
        if not isinstance(value, str):
            raise ValidationError(f"heartbeat[{index}] field '{name}' must be a string")
        kwargs[name] = value

    for name in _OPTIONAL_INT_FIELDS:
        value = data.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"heartbeat[{index}] field '{name}' must be an integer")
        kwargs[name] = value

    is_write = data.get('is_write', False)
    if is_write is None:
        is_write = False
    if not isinstance(is_write, bool):
        raise ValidationError(f"heartbeat[{index}] field 'is_write' must be a boolean")
    kwargs['is_write'] = is_write

    # plugins send either a comma-joined string or a list of names
    dependencies = data.get('dependencies')
    if isinstance(dependencies, list):
        if not all(isinstance(d, str) for d in dependencies):
            raise ValidationError(f"heartbeat[{index}] field 'dependencies' must hold strings")
        dependencies = ','.join(dependencies) or None
    elif dependencies is not None and not isinstance(dependencies, str):
        raise ValidationError(f"heartbeat[{index}] field 'dependencies' must be a string or list")
    kwargs['dependencies'] = dependencies or None

    return Heartbeat(**kwargs)


def parse_heartbeats(payload):
    """Validate a decoded JSON array of heartbeats. Raises ValidationError."""
    if not isinstance(payload, list):
        raise ValidationError("heartbeats payload must be a JSON array")
    if not payload:
        raise ValidationError("heartbeats payload is empty")
    return [parse_heartbeat(item, i) for i, item in enumerate(payload)]
