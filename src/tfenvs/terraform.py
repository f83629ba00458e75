from collections import (
    Counter,
)
from collections.abc import (
    Iterator,
    Mapping,
    Sequence,
)
from contextlib import (
    contextmanager,
    nullcontext,
)
import json
import logging
import os
from pathlib import (
    Path,
)
import subprocess
from typing import (
    Optional,
)

import attr

from tfenvs import (
    RequirementError,
    config,
    reject,
)
from tfenvs.environments import (
    EnvironmentDescriptor,
    Project,
)
from tfenvs.locking import (
    StateLock,
)
from tfenvs.state import (
    StateFingerprint,
    StateRecord,
    StateStore,
)
from tfenvs.types import (
    JSON,
)
from tfenvs.validation import (
    Problem,
    errors,
    validate,
    warnings,
)

log = logging.getLogger(__name__)


class Terraform:
    """
    Runs the Terraform executable in the directory containing the shared
    configuration.
    """

    def __init__(self, cwd: Path, binary: Optional[str] = None) -> None:
        super().__init__()
        self.cwd = cwd
        self.binary = config.terraform_bin if binary is None else binary

    def _env(self) -> Mapping[str, str]:
        # Makes Terraform omit suggestions of commands to run next
        return {**os.environ, 'TF_IN_AUTOMATION': '1'}

    def run(self, *args: str, capture: bool = True, **kwargs) -> Optional[str]:
        """
        Run Terraform with the given arguments and return its standard output,
        or None if `capture` is false, in which case the output is passed
        through. A non-zero exit status raises CalledProcessError.
        """
        args = [self.binary, *args]
        log.info('Running %r', args)
        cmd = subprocess.run(args,
                             check=True,
                             stdout=subprocess.PIPE if capture else None,
                             text=True,
                             shell=False,
                             cwd=self.cwd,
                             env=self._env(),
                             **kwargs)
        return cmd.stdout

    def returncode(self, *args: str) -> int:
        args = [self.binary, *args]
        log.info('Running %r', args)
        cmd = subprocess.run(args,
                             check=False,
                             text=True,
                             shell=False,
                             cwd=self.cwd,
                             env=self._env())
        return cmd.returncode

    def run_state_list(self) -> list[str]:
        try:
            stdout = self.run('state', 'list', stderr=subprocess.PIPE)
            return stdout.splitlines()
        except subprocess.CalledProcessError as e:
            if 'No state file was found!' in e.stderr:
                return []
            else:
                raise

    def version(self) -> str:
        output = self.run('version', '-json')
        return json.loads(output)['terraform_version']

    @property
    def backend_cache_path(self) -> Path:
        return self.cwd / '.terraform' / 'terraform.tfstate'

    def backend_cache(self) -> Optional[JSON]:
        """
        The configuration of the backend the working directory was last
        initialized with, or None if it wasn't initialized yet.
        """
        try:
            with open(self.backend_cache_path) as f:
                cache = json.load(f)
        except FileNotFoundError:
            return None
        else:
            backend = cache.get('backend')
            return None if backend is None else backend.get('config', {})


#: Plan actions that don't change any real-world resource
_inert_actions = frozenset({'no-op', 'read'})


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class PlanSummary:
    #: The resource address of every resource the plan would change, mapped
    #: to the type of that resource and the planned actions
    changes: Mapping[str, tuple[str, tuple[str, ...]]]

    @classmethod
    def from_json(cls, plan: JSON) -> 'PlanSummary':
        """
        Summarize the output of `terraform show -json` for a saved plan.

        >>> p = PlanSummary.from_json({'resource_changes': [
        ...     {'address': 'aws_instance.web[0]', 'type': 'aws_instance',
        ...      'change': {'actions': ['create']}},
        ...     {'address': 'aws_vpc.main', 'type': 'aws_vpc',
        ...      'change': {'actions': ['delete', 'create']}},
        ...     {'address': 'aws_subnet.a', 'type': 'aws_subnet',
        ...      'change': {'actions': ['no-op']}}
        ... ]})
        >>> p.create, p.replace, p.has_changes
        (['aws_instance.web[0]'], ['aws_vpc.main'], True)
        """
        return cls(changes={
            change['address']: (change['type'], tuple(change['change']['actions']))
            for change in plan.get('resource_changes', [])
            if not _inert_actions.issuperset(change['change']['actions'])
        })

    def _addresses(self, actions: Sequence[str]) -> list[str]:
        return sorted(
            address
            for address, (_, actions_) in self.changes.items()
            if actions_ == tuple(actions)
        )

    @property
    def create(self) -> list[str]:
        return self._addresses(['create'])

    @property
    def update(self) -> list[str]:
        return self._addresses(['update'])

    @property
    def delete(self) -> list[str]:
        return self._addresses(['delete'])

    @property
    def replace(self) -> list[str]:
        return sorted(
            address
            for address, (_, actions) in self.changes.items()
            if sorted(actions) == ['create', 'delete']
        )

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def counts_by_type(self, action: str) -> Counter:
        """
        >>> p = PlanSummary(changes={
        ...     'aws_instance.web[0]': ('aws_instance', ('create',)),
        ...     'aws_instance.web[1]': ('aws_instance', ('create',)),
        ...     'aws_eip.web': ('aws_eip', ('update',))
        ... })
        >>> p.counts_by_type('create')
        Counter({'aws_instance': 2})
        """
        return Counter(
            type_
            for type_, actions in self.changes.values()
            if actions == (action,)
        )

    def __str__(self) -> str:
        """
        >>> str(PlanSummary(changes={}))
        'No changes.'

        >>> str(PlanSummary(changes={'aws_vpc.main': ('aws_vpc', ('create',))}))
        '1 to add, 0 to change, 0 to replace, 0 to destroy.'
        """
        if self.has_changes:
            return (f'{len(self.create)} to add, {len(self.update)} to change, '
                    f'{len(self.replace)} to replace, {len(self.delete)} to destroy.')
        else:
            return 'No changes.'


class InvalidEnvironment(RequirementError):

    def __init__(self, name: str, problems: Sequence[Problem]) -> None:
        super().__init__(
            f'Refusing to operate on environment {name!r}: '
            + '; '.join(p.message for p in problems)
        )
        self.problems = problems


class IsolationViolation(RequirementError):

    def __init__(self, name: str, affected: Sequence[str]) -> None:
        super().__init__(
            f'The operation on environment {name!r} modified the state of '
            f'environments {list(affected)!r}'
        )
        self.affected = affected


class Selector:
    """
    Binds one environment's parameters and state location to the shared
    configuration and runs Terraform against them. Both the parameter file and
    the state location are derived from the environment name so they can't
    be mismatched.
    """

    def __init__(self,
                 project: Project,
                 terraform: Optional[Terraform] = None,
                 state_store: Optional[StateStore] = None,
                 lock_table: Optional[str] = None
                 ) -> None:
        super().__init__()
        self.project = project
        self.terraform = Terraform(project.root) if terraform is None else terraform
        self.state_store = StateStore() if state_store is None else state_store
        self.lock_table = config.lock_table if lock_table is None else lock_table
        self._terraform_version: Optional[str] = None

    def select(self, name: str) -> EnvironmentDescriptor:
        problems = validate(self.project, [name])
        for problem in warnings(problems):
            log.warning('%s', problem)
        errors_ = [p for p in errors(problems) if p.environment in (None, name)]
        reject(bool(errors_), name, errors_, exception=InvalidEnvironment)
        environment = self.project.environment(name)
        log.info('Selected environment %r with parameters from %s and state at %s',
                 name, environment.parameter_file, environment.backend.location)
        return environment

    def init(self, name: str, reconfigure: Optional[bool] = None) -> EnvironmentDescriptor:
        environment = self.select(name)
        self._init(environment, reconfigure)
        return environment

    def _init(self, environment: EnvironmentDescriptor, reconfigure: Optional[bool] = None):
        if self._terraform_version is None:
            self._terraform_version = self.terraform.version()
            log.info('Using Terraform %s', self._terraform_version)
        cached = self.terraform.backend_cache()
        if reconfigure is None:
            reconfigure = cached is not None and not environment.backend.same_location(cached)
            if reconfigure:
                log.info('Switching the working directory to the backend at %s',
                         environment.backend.location)
        args = ['init', '-input=false', *environment.backend.init_args()]
        if reconfigure:
            args.append('-reconfigure')
        self.terraform.run(*args, capture=False)

    def _var_file_arg(self, environment: EnvironmentDescriptor) -> str:
        return f'-var-file={environment.parameter_file.absolute()}'

    def plan(self, name: str, out: Optional[Path] = None) -> PlanSummary:
        environment = self.select(name)
        self._init(environment)
        if out is None:
            out = self.project.root / '.terraform' / f'{name}.tfplan'
        out = out.absolute()
        self.terraform.run('plan',
                           '-input=false',
                           self._var_file_arg(environment),
                           f'-out={out}',
                           capture=False)
        output = self.terraform.run('show', '-json', str(out))
        summary = PlanSummary.from_json(json.loads(output))
        log.info('Plan for environment %r: %s', name, summary)
        return summary

    def apply(self,
              name: str,
              auto_approve: bool = True,
              verify_isolation: bool = False
              ) -> None:
        self._mutate('apply', name, auto_approve, verify_isolation)

    def destroy(self,
                name: str,
                auto_approve: bool = True,
                verify_isolation: bool = False
                ) -> None:
        self._mutate('destroy', name, auto_approve, verify_isolation)

    def _mutate(self,
                command: str,
                name: str,
                auto_approve: bool,
                verify_isolation: bool):
        environment = self.select(name)
        with self._isolation_check(environment, verify_isolation):
            with self._lock(environment):
                self._init(environment)
                args = [command, self._var_file_arg(environment)]
                if auto_approve:
                    # Without -auto-approve, Terraform prompts for confirmation
                    args[1:1] = ['-input=false']
                    args.append('-auto-approve')
                self.terraform.run(*args, capture=False)
        log.info('Successfully ran %r against environment %r', command, name)

    def _lock(self, environment: EnvironmentDescriptor):
        if self.lock_table is None:
            return nullcontext()
        else:
            return StateLock(self.lock_table, environment.backend)

    @contextmanager
    def _isolation_check(self,
                         environment: EnvironmentDescriptor,
                         enabled: bool
                         ) -> Iterator[None]:
        if enabled:
            others = [
                other for other in self.project.environments()
                if other.name != environment.name
            ]
            before = self._fingerprints(others)
            yield
            after = self._fingerprints(others)
            affected = sorted(
                name for name, fingerprint in before.items()
                if after[name] != fingerprint
            )
            reject(bool(affected), environment.name, affected, exception=IsolationViolation)
            log.info('State records of environments %r are unaffected',
                     sorted(before.keys()))
        else:
            yield

    def _fingerprints(self,
                      environments: Sequence[EnvironmentDescriptor]
                      ) -> dict[str, Optional[StateFingerprint]]:
        return {
            environment.name: self.state_store.fingerprint(environment.backend)
            for environment in environments
        }

    def converged(self, name: str) -> bool:
        """
        True if applying the environment would not change anything.
        """
        environment = self.select(name)
        self._init(environment)
        args = ['plan', '-input=false', '-detailed-exitcode', self._var_file_arg(environment)]
        returncode = self.terraform.returncode(*args)
        if returncode == 0:
            return True
        elif returncode == 2:
            return False
        else:
            raise subprocess.CalledProcessError(returncode, [self.terraform.binary, *args])

    def state(self, name: str) -> Optional[StateRecord]:
        """
        Read the state record of the given environment directly from S3.
        """
        environment = self.project.environment(name)
        return self.state_store.read(environment.backend)

    def resources(self, name: str) -> list[str]:
        """
        The addresses of the resources tracked in the state of the given
        environment, as listed by Terraform. Unlike :meth:`state`, this works
        with every type of backend.
        """
        environment = self.select(name)
        self._init(environment)
        return self.terraform.run_state_list()
