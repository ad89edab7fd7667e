"""
Template parameter mapping for bulk send jobs.

Each ``{{n}}`` placeholder of a template is filled per recipient from a
mapping definition:

- manual:        the job's global value for n, else the mapping default
- contact_field: a contact attribute (name/phone/email/wa_id) or a key of the
                 contact's custom ``data``, else the mapping default
- expression:    a string with ``{{contact.<field>}}`` / ``{{global.<key>}}``
                 substitutions, else the mapping default

Placeholders without a mapping take the global value for n, or ''.
Parameters are resolved once, when the job is created.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

CONTACT_BUILTIN_FIELDS = ('name', 'phone', 'email', 'wa_id')

CONTACT_PATTERN = re.compile(r'\{\{contact\.(\w+)\}\}')
GLOBAL_PATTERN = re.compile(r'\{\{global\.(\w+)\}\}')


@dataclass(frozen=True)
class ParamMapping:
    """Where the value for one placeholder comes from."""
    param_index: int
    source_type: str
    source_value: Optional[str] = None
    default_value: Optional[str] = None

    @classmethod
    def from_request(cls, data: Mapping[str, Any]) -> 'ParamMapping':
        """Build from an API-style dict (``paramIndex``, ``sourceType``, ...)."""
        return cls(
            param_index=int(data['paramIndex']),
            source_type=data['sourceType'],
            source_value=data.get('sourceValue'),
            default_value=data.get('defaultValue'),
        )

    @classmethod
    def from_def(cls, param_def) -> 'ParamMapping':
        """Build from a stored TemplateParamDef row."""
        return cls(
            param_index=param_def.param_index,
            source_type=param_def.source_type,
            source_value=param_def.source_value,
            default_value=param_def.default_value,
        )


def contact_field_value(contact, field_name: str) -> str:
    """
    Read a field from a contact.

    Built-in fields are attributes; anything else is looked up in the
    contact's custom ``data``. Non-string custom values count as empty.
    """
    if field_name in CONTACT_BUILTIN_FIELDS:
        return getattr(contact, field_name, None) or ''

    data = getattr(contact, 'data', None)
    if isinstance(data, dict):
        value = data.get(field_name)
        return value if isinstance(value, str) else ''
    return ''


def render_expression(expression: str, contact, global_values: Mapping[str, str]) -> str:
    """
    Substitute ``{{contact.<field>}}`` and ``{{global.<key>}}`` in an expression.

    Nothing else is interpreted; unknown fields and keys render as ''.
    """
    rendered = CONTACT_PATTERN.sub(
        lambda match: contact_field_value(contact, match.group(1)),
        expression or ''
    )
    return GLOBAL_PATTERN.sub(
        lambda match: str(global_values.get(match.group(1)) or ''),
        rendered
    )


def _global_value(global_values: Mapping[str, str], index: int) -> Optional[str]:
    value = global_values.get(str(index))
    return None if value is None else str(value)


def resolve_param(
    index: int,
    mapping: Optional[ParamMapping],
    contact,
    global_values: Mapping[str, str],
) -> str:
    """Resolve the value of placeholder ``{{index}}`` for one contact."""
    if mapping is None:
        value = _global_value(global_values, index)
        return value if value is not None else ''

    if mapping.source_type == 'manual':
        value = _global_value(global_values, index)
        if value is not None:
            return value
        return mapping.default_value or ''

    if mapping.source_type == 'contact_field':
        value = contact_field_value(contact, mapping.source_value or '')
        return value or mapping.default_value or ''

    if mapping.source_type == 'expression':
        value = render_expression(mapping.source_value or '', contact, global_values)
        return value or mapping.default_value or ''

    logger.warning(f"Unknown param source_type: {mapping.source_type}")
    return mapping.default_value or ''


def resolve_params(
    contact,
    variable_count: int,
    mappings: Optional[Iterable[ParamMapping]] = None,
    global_values: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """
    Resolve all placeholders 1..variable_count for one contact.

    Returns:
        Ordered list of strings, one per placeholder
    """
    by_index = {m.param_index: m for m in (mappings or [])}
    global_values = global_values or {}

    return [
        resolve_param(index, by_index.get(index), contact, global_values)
        for index in range(1, variable_count + 1)
    ]
