"""
Structural checks of a project: every environment supplies every required
parameter, no two environments share a state record, and the shared
configuration is free of environment-specific literals.
"""
from collections import (
    defaultdict,
)
from collections.abc import (
    Iterable,
    Sequence,
)
from enum import (
    Enum,
)
import logging
from typing import (
    Optional,
)

import attr

from tfenvs import (
    RequirementError,
    config,
)
from tfenvs.environments import (
    EnvironmentDescriptor,
    Project,
)

log = logging.getLogger(__name__)


class Severity(Enum):
    error = 'error'
    warning = 'warning'


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class Problem:
    severity: Severity
    #: The environment the problem pertains to, or None for problems with the
    #: shared configuration
    environment: Optional[str]
    message: str

    def __str__(self) -> str:
        """
        >>> str(Problem(severity=Severity.error, environment='dev', message='Oops'))
        'error: dev: Oops'

        >>> str(Problem(severity=Severity.warning, environment=None, message='Hmm'))
        'warning: Hmm'
        """
        where = '' if self.environment is None else f'{self.environment}: '
        return f'{self.severity.value}: {where}{self.message}'


def errors(problems: Iterable[Problem]) -> list[Problem]:
    return [p for p in problems if p.severity is Severity.error]


def warnings(problems: Iterable[Problem]) -> list[Problem]:
    return [p for p in problems if p.severity is Severity.warning]


def validate(project: Project, names: Optional[Sequence[str]] = None) -> list[Problem]:
    """
    Check the given project and return the problems found. If environment
    names are given, only those environments are checked individually but
    state locations are still compared against all environments.
    """
    problems = []

    def error(environment, message):
        problems.append(Problem(severity=Severity.error,
                                environment=environment,
                                message=message))

    def warning(environment, message):
        problems.append(Problem(severity=Severity.warning,
                                environment=environment,
                                message=message))

    all_names = project.names()
    if not all_names:
        error(None, f'No environments found in {project.environments_dir}')
        return problems
    if names is None:
        names = all_names
    else:
        names = list(names)
        for name in set(names) - set(all_names):
            error(name, 'No such environment')
        names = [name for name in names if name in all_names]

    descriptors: dict[str, EnvironmentDescriptor] = {}
    for name in all_names:
        try:
            descriptors[name] = project.environment(name)
        except RequirementError as e:
            if name in names:
                error(name, error_message(e))

    definitions = project.definitions

    # Shared configuration

    for location, literal in definitions.embedded_literals(all_names,
                                                           allowlist=config.literal_allowlist):
        error(None, f'The shared configuration embeds the environment-specific '
                    f'literal {literal!r} at {location}')

    if definitions.backend_type is None:
        with_backend_files = sorted(
            name for name, d in descriptors.items()
            if name in names and d.backend.source is not None
        )
        if with_backend_files:
            error(None, f'The shared configuration does not declare a backend '
                        f'block, the backend files of environments '
                        f'{with_backend_files!r} would be ignored')

    # State locations

    by_location = defaultdict(list)
    for name, descriptor in descriptors.items():
        by_location[descriptor.backend.location].append(name)
    for location, sharing in by_location.items():
        if len(sharing) > 1 and not set(sharing).isdisjoint(names):
            error(None, f'Environments {sorted(sharing)!r} share the state '
                        f'record at {location}')

    # Individual environments

    required = definitions.required_variables
    declared = definitions.variables.keys()
    for name in names:
        try:
            descriptor = descriptors[name]
        except KeyError:
            continue
        backend = descriptor.backend
        # Keys are only derived for S3, other backends are passed through
        if backend.is_s3:
            if backend.key != descriptor.derived_state_key:
                error(name, f'The state key {backend.key!r} differs from the key '
                            f'{descriptor.derived_state_key!r} derived from the '
                            f'environment name')
            if backend.bucket is None:
                error(name, 'The backend does not specify a bucket')
        for parameter in sorted(required - descriptor.parameters.keys()):
            error(name, f'Missing value for required parameter {parameter!r} '
                        f'in {descriptor.parameter_file}')
        for parameter in sorted(descriptor.parameters.keys() - declared):
            warning(name, f'Parameter {parameter!r} in {descriptor.parameter_file} '
                          f'is not declared by the shared configuration')
        if backend.has_locking is False:
            warning(name, f'The backend for {backend.location} has no state '
                          f'locking. Concurrent applies can corrupt the state.')

    for problem in problems:
        log.debug('%s', problem)
    return problems


def error_message(e: RequirementError) -> str:
    """
    >>> error_message(RequirementError('No such file', 'dev.tfvars'))
    "No such file: 'dev.tfvars'"

    >>> error_message(RequirementError('Oops'))
    'Oops'
    """
    if not e.args:
        return type(e).__name__
    message, *args = e.args
    if args:
        return f"{message}: {', '.join(map(repr, args))}"
    else:
        return str(message)
