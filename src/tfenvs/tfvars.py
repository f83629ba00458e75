"""
Reading and writing Terraform parameter files, i.e., `.tfvars` files in HCL
syntax and `.tfvars.json` files in JSON syntax.
"""
from collections.abc import (
    Iterable,
    Mapping,
)
import json
import logging
from pathlib import (
    Path,
)
import re
from typing import (
    Any,
)

import hcl2

from tfenvs import (
    require,
)
from tfenvs.types import (
    AnyJSON,
    MutableJSON,
)

log = logging.getLogger(__name__)

json_suffixes = ('.json',)

hcl_suffixes = ('.tfvars', '.hcl', '.tf')


def is_json_file(path: Path) -> bool:
    return path.suffix in json_suffixes


def is_hcl_file(path: Path) -> bool:
    return path.suffix in hcl_suffixes


def load_tfvars(path: Path) -> MutableJSON:
    """
    Parse the given parameter or backend file and return the assignments it
    contains.
    """
    log.debug('Loading %s', path)
    if is_json_file(path):
        with open(path) as f:
            values = json.load(f)
    elif is_hcl_file(path):
        values = unescape(load_hcl(path))
    else:
        assert False, path
    require(isinstance(values, dict),
            'Expected a mapping at the top level of the file', str(path))
    return values


def load_hcl(path: Path) -> MutableJSON:
    with open(path) as f:
        return unquote(hcl2.load(f))


def unquote(value: AnyJSON) -> AnyJSON:
    """
    Depending on the version, the HCL parser keeps the double quotes around
    string literals and quoted block labels. Remove them. Also remove the
    entries that newer versions of the parser add for comments and block
    metadata.

    >>> unquote({'"environment"': '"dev"', 'count': 1})
    {'environment': 'dev', 'count': 1}

    >>> unquote(['"a"', 'b', '"'])
    ['a', 'b', '"']

    >>> unquote({'__comments__': [{'value': 'sizing'}],
    ...          'tags': {'team': 'infra', '__is_block__': False}})
    {'tags': {'team': 'infra'}}
    """
    if isinstance(value, dict):
        return {
            unquote(k): unquote(v)
            for k, v in value.items()
            if not _is_metadata_key(k)
        }
    elif isinstance(value, list):
        return [unquote(v) for v in value]
    elif isinstance(value, str):
        if len(value) > 1 and value[0] == '"' and value[-1] == '"':
            return value[1:-1]
        else:
            return value
    else:
        return value


def _is_metadata_key(key: str) -> bool:
    return key.startswith('__') and key.endswith('__')


def unescape(value: AnyJSON) -> AnyJSON:
    """
    Undo the escaping of literal template sequences in string values, the
    inverse of what :func:`hcl_literal` does. Parser versions that already
    unescape these sequences are unaffected.

    >>> unescape({'greeting': 'Hello, $${name}', 'tags': ['%%{x}', 1]})
    {'greeting': 'Hello, ${name}', 'tags': ['%{x}', 1]}
    """
    if isinstance(value, dict):
        return {k: unescape(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [unescape(v) for v in value]
    elif isinstance(value, str):
        return value.replace('$${', '${').replace('%%{', '%{')
    else:
        return value


identifier_re = re.compile(r'[A-Za-z_][A-Za-z0-9_-]*')


def dump_tfvars(values: Mapping[str, AnyJSON],
                commented: Iterable[str] = ()
                ) -> str:
    """
    Render the given assignments in HCL syntax. The names in `commented` are
    rendered as commented-out assignments without a value, for the author of
    the file to fill in.

    >>> print(dump_tfvars({'environment': 'dev', 'instance_count': 1}), end='')
    environment = "dev"
    instance_count = 1

    >>> print(dump_tfvars({'tags': {'team': 'infra'}, 'zones': ['a', 'b']},
    ...                   commented=['vpc_cidr']), end='')
    tags = { team = "infra" }
    zones = ["a", "b"]
    # vpc_cidr =
    """
    lines = [
        f'{name} = {hcl_literal(value)}'
        for name, value in values.items()
    ]
    lines.extend(
        f'# {name} ='
        for name in commented
    )
    return ''.join(line + '\n' for line in lines)


def hcl_literal(value: Any) -> str:
    """
    >>> hcl_literal('${var.x}')
    '"$${var.x}"'

    >>> hcl_literal([True, None, 1.5])
    '[true, null, 1.5]'

    >>> hcl_literal({'Name': 'web', 'cost-center': 42, 'a b': 'c'})
    '{ Name = "web", cost-center = 42, "a b" = "c" }'

    >>> hcl_literal({})
    '{}'
    """
    if value is None:
        return 'null'
    elif isinstance(value, bool):
        return 'true' if value else 'false'
    elif isinstance(value, (int, float)):
        return repr(value)
    elif isinstance(value, str):
        # Literal `${` and `%{` sequences must be escaped to prevent
        # interpolation
        value = value.replace('${', '$${').replace('%{', '%%{')
        return json.dumps(value)
    elif isinstance(value, (list, tuple)):
        return '[' + ', '.join(map(hcl_literal, value)) + ']'
    elif isinstance(value, dict):
        if value:
            return '{ ' + ', '.join(
                f'{_hcl_key(k)} = {hcl_literal(v)}'
                for k, v in value.items()
            ) + ' }'
        else:
            return '{}'
    else:
        assert False, type(value)


def _hcl_key(key: str) -> str:
    return key if identifier_re.fullmatch(key) else json.dumps(key)


def redact(name: str, value: Any) -> Any:
    """
    >>> redact('db_password', 'hunter2')
    'REDACTED'

    >>> redact('instance_count', 3)
    3
    """
    forbidden = ('secret', 'password', 'token')
    return 'REDACTED' if any(s in name.lower() for s in forbidden) else value
