from collections.abc import (
    Iterable,
    Mapping,
    Sequence,
)
from itertools import (
    chain,
)
import json
import logging
from pathlib import (
    Path,
)
import re
from typing import (
    Optional,
)

import attr

from tfenvs import (
    reject,
    require,
)
from tfenvs.tfvars import (
    load_hcl,
)
from tfenvs.types import (
    AnyJSON,
    CompositeJSON,
    JSON,
)

log = logging.getLogger(__name__)


def normalize_tf(tf_config: CompositeJSON) -> Iterable[tuple[str, AnyJSON]]:
    """
    Certain levels of a Terraform configuration can either be a single
    dictionary or a list of dictionaries. The HCL parser always produces the
    latter, JSON configuration usually uses the former. For example, these are
    equivalent:

        {"variable": {"foo": {"type": "string"}}}
        {"variable": [{"foo": {"type": "string"}}]}

    Return an iterator of the dictionary entries in the argument, regardless
    which form is used.

    >>> list(normalize_tf({}))
    []

    >>> list(normalize_tf({'foo': 'bar', 'baz': 'qux'}))
    [('foo', 'bar'), ('baz', 'qux')]

    >>> list(normalize_tf([{'foo': 'bar'}, {'baz': 'qux'}]))
    [('foo', 'bar'), ('baz', 'qux')]
    """
    if isinstance(tf_config, dict):
        return tf_config.items()
    elif isinstance(tf_config, list):
        return chain.from_iterable(d.items() for d in tf_config)
    else:
        assert False, type(tf_config)


def _single_block(body: CompositeJSON) -> JSON:
    # The HCL parser wraps the body of each labeled block in a list
    if isinstance(body, list):
        require(len(body) == 1, 'Expected exactly one block', body)
        body = body[0]
    assert isinstance(body, dict), type(body)
    return body


_type_expression_re = re.compile(r'\$\{(.*)\}', re.DOTALL)


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class Variable:
    name: str
    type: Optional[str] = None
    has_default: bool = False
    default: AnyJSON = None
    description: Optional[str] = None
    sensitive: bool = False

    @property
    def required(self) -> bool:
        return not self.has_default

    @classmethod
    def from_block(cls, name: str, body: JSON) -> 'Variable':
        """
        >>> Variable.from_block('instance_count', {'type': '${number}'})  # doctest: +NORMALIZE_WHITESPACE
        Variable(name='instance_count', type='number', has_default=False,
                 default=None, description=None, sensitive=False)

        >>> Variable.from_block('tags', {'default': {}}).required
        False
        """
        type_ = body.get('type')
        if isinstance(type_, str):
            match = _type_expression_re.fullmatch(type_)
            if match is not None:
                type_ = match.group(1)
        return cls(name=name,
                   type=type_,
                   has_default='default' in body,
                   default=body.get('default'),
                   description=body.get('description'),
                   sensitive=bool(body.get('sensitive', False)))


#: The top-level sections of a Terraform configuration in which literal
#: values would end up in real-world resources
#:
literal_sections = ('resource', 'data', 'module', 'locals', 'provider', 'output')

_interpolation_re = re.compile(r'[$%]\{[^}]*\}')

_quoted_re = re.compile(r'"([^"\\]*)\\?"')

_token_separator_re = re.compile(r'[^A-Za-z0-9]+')


def literal_tokens(value: str) -> set[str]:
    """
    The lower-case tokens of the given string. Of interpolations, only the
    string literals they contain are considered.

    >>> sorted(literal_tokens('${var.name_prefix}-dev-web'))
    ['dev', 'web']

    >>> sorted(literal_tokens('${var.environment}'))
    []

    >>> sorted(literal_tokens('${var.environment == "prod" ? 3 : 1}'))
    ['prod']

    >>> sorted(literal_tokens('Production_DB 2'))
    ['2', 'db', 'production']
    """

    def literals(match: re.Match) -> str:
        return ' '.join(_quoted_re.findall(match.group()))

    value = _interpolation_re.sub(literals, value)
    return {token.lower() for token in _token_separator_re.split(value) if token}


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class ResourceDefinitionSet:
    """
    The environment-agnostic Terraform configuration shared by all
    environments.
    """
    path: Path
    variables: Mapping[str, Variable]
    #: Tuples of file name, section name and section content for every
    #: top-level section other than `variable`, in file order
    blocks: Sequence[tuple[str, str, AnyJSON]]
    backend_type: Optional[str] = None

    @classmethod
    def load(cls, path: Path) -> 'ResourceDefinitionSet':
        files = [
            *sorted(path.glob('*.tf')),
            *sorted(path.glob('*.tf.json'))
        ]
        require(len(files) > 0,
                'No Terraform configuration files found', str(path))
        variables = {}
        blocks = []
        backend_type = None
        for file in files:
            log.debug('Loading Terraform configuration from %s', file)
            if file.suffix == '.json':
                with open(file) as f:
                    document = json.load(f)
            else:
                document = load_hcl(file)
            require(isinstance(document, dict),
                    'Expected a mapping at the top level of the file', str(file))
            for section, content in document.items():
                if section == 'variable':
                    for name, body in normalize_tf(content):
                        reject(name in variables,
                               'Variable is declared more than once', name, str(file))
                        variables[name] = Variable.from_block(name, _single_block(body))
                else:
                    if section == 'terraform':
                        for key, value in normalize_tf(content):
                            if key == 'backend':
                                for type_, _ in normalize_tf(value):
                                    reject(backend_type is not None,
                                           'More than one backend configured', str(file))
                                    backend_type = type_
                    blocks.append((file.name, section, content))
        return cls(path=path,
                   variables=variables,
                   blocks=blocks,
                   backend_type=backend_type)

    @property
    def required_variables(self) -> set[str]:
        return {name for name, variable in self.variables.items() if variable.required}

    def embedded_literals(self,
                          names: Iterable[str],
                          allowlist: Iterable[str] = ()
                          ) -> Iterable[tuple[str, str]]:
        """
        Yield the location and value of every string literal in the shared
        configuration that contains any of the given environment names as a
        separate token.
        """
        names = set(names)
        allowlist = set(allowlist)
        for file_name, section, content in self.blocks:
            if section in literal_sections:
                for location, value in _strings(content, (section,)):
                    if value not in allowlist and not literal_tokens(value).isdisjoint(names):
                        yield f"{file_name}: {'.'.join(location)}", value


def _strings(value: AnyJSON, location: tuple[str, ...]) -> Iterable[tuple[tuple[str, ...], str]]:
    """
    Yield every string in the given configuration, including the keys of
    mappings, along with its location.

    >>> for location, value in _strings({'sizes': {'dev': 't3.micro'}}, ('locals',)):
    ...     print('.'.join(location), value)
    locals.sizes sizes
    locals.sizes.dev dev
    locals.sizes.dev t3.micro
    """
    if isinstance(value, dict):
        for k, v in value.items():
            yield (*location, k), k
            yield from _strings(v, (*location, k))
    elif isinstance(value, list):
        for v in value:
            yield from _strings(v, location)
    elif isinstance(value, str):
        yield location, value
