from collections import (
    ChainMap,
)
from collections.abc import (
    Mapping,
    Sequence,
)
import functools
import json
import logging
import os
from pathlib import (
    Path,
)
import re
from typing import (
    Optional,
    TYPE_CHECKING,
)

log = logging.getLogger(__name__)

cached_property = property if TYPE_CHECKING else functools.cached_property


class Config:
    """
    Settings are read from environment variables. Variables that are absent
    from the process environment fall back to the defaults below. A default
    of None documents a variable that has no default value.
    """

    _defaults: Mapping[str, Optional[str]] = {
        # 0, 1 or 2. Higher values make the logs more verbose. At 2, the
        # request and response bodies of AWS API calls are logged, too.
        'TFENVS_DEBUG': '0',

        # The directory containing the shared, environment-agnostic Terraform
        # configuration (the resource definition set).
        'TFENVS_PROJECT_DIR': '.',

        # The directory containing the per-environment parameter files, either
        # absolute or relative to TFENVS_PROJECT_DIR.
        'TFENVS_ENVIRONMENTS_DIR': 'environments',

        # `flat` for one parameter file per environment, `nested` for one
        # subdirectory per environment or `auto` to detect the layout.
        'TFENVS_LAYOUT': 'auto',

        # The state of an environment is stored under the key
        #
        # [TFENVS_STATE_KEY_PREFIX/]<environment name>/TFENVS_STATE_SUFFIX
        #
        'TFENVS_STATE_SUFFIX': 'terraform.tfstate',
        'TFENVS_STATE_KEY_PREFIX': None,

        # The S3 backend used for environments that lack a backend file of
        # their own, as is always the case in the flat layout.
        'TFENVS_STATE_BUCKET': None,
        'TFENVS_STATE_REGION': None,

        # A DynamoDB table with a string hash key named `LockID`. If set, it is
        # configured as Terraform's lock table for synthesized backends and
        # used by `apply` and `destroy` to serialize mutations of an
        # environment's state.
        'TFENVS_LOCK_TABLE': None,

        'TFENVS_TERRAFORM_BIN': 'terraform',

        # A JSON array of strings that may appear in the shared configuration
        # even though they contain the name of an environment.
        'TFENVS_LITERAL_ALLOWLIST': '[]',
    }

    @property
    def environ(self):
        return ChainMap(os.environ, self._filtered_defaults)

    @property
    def _filtered_defaults(self) -> Mapping[str, str]:
        return {k: v for k, v in self._defaults.items() if v is not None}

    @property
    def debug(self) -> int:
        debug = int(self.environ['TFENVS_DEBUG'])
        self._validate_debug(debug)
        return debug

    @debug.setter
    def debug(self, debug: int):
        self._validate_debug(debug)
        os.environ['TFENVS_DEBUG'] = str(debug)

    def _validate_debug(self, debug):
        require(debug in (0, 1, 2), 'TFENVS_DEBUG must be either 0, 1 or 2', debug)

    @property
    def project_dir(self) -> Path:
        return Path(self.environ['TFENVS_PROJECT_DIR'])

    @property
    def environments_dir(self) -> Path:
        return self.project_dir / self.environ['TFENVS_ENVIRONMENTS_DIR']

    layouts = ('auto', 'flat', 'nested')

    @property
    def layout(self) -> str:
        layout = self.environ['TFENVS_LAYOUT']
        require(layout in self.layouts,
                f'TFENVS_LAYOUT must be one of {self.layouts!r}', layout)
        return layout

    @property
    def state_suffix(self) -> str:
        suffix = self.environ['TFENVS_STATE_SUFFIX']
        self.validate_key_component(suffix, name='TFENVS_STATE_SUFFIX')
        return suffix

    @property
    def state_key_prefix(self) -> Optional[str]:
        prefix = self.environ.get('TFENVS_STATE_KEY_PREFIX')
        if prefix:
            prefix = prefix.strip('/')
            for component in prefix.split('/'):
                self.validate_key_component(component, name='TFENVS_STATE_KEY_PREFIX')
            return prefix
        else:
            return None

    @property
    def state_bucket(self) -> Optional[str]:
        return self.environ.get('TFENVS_STATE_BUCKET') or None

    @property
    def state_region(self) -> Optional[str]:
        return self.environ.get('TFENVS_STATE_REGION') or None

    @property
    def lock_table(self) -> Optional[str]:
        return self.environ.get('TFENVS_LOCK_TABLE') or None

    @property
    def terraform_bin(self) -> str:
        return self.environ['TFENVS_TERRAFORM_BIN']

    @property
    def literal_allowlist(self) -> Sequence[str]:
        variable = 'TFENVS_LITERAL_ALLOWLIST'
        allowlist = json.loads(self.environ[variable])
        require(isinstance(allowlist, list),
                f'{variable} must be a list', allowlist)
        require(all(isinstance(literal, str) for literal in allowlist),
                f'{variable} must contain only strings', allowlist)
        return allowlist

    environment_name_re = re.compile(r'[a-z][a-z0-9]{1,16}')

    @classmethod
    def validate_environment_name(cls, name: str) -> None:
        """
        >>> Config.validate_environment_name('prod')

        >>> Config.validate_environment_name('Prod')
        Traceback (most recent call last):
        ...
        tfenvs.RequirementError: Environment name 'Prod' is too short, too long or contains invalid characters.
        """
        require(cls.is_valid_environment_name(name),
                f'Environment name {name!r} is too short, '
                f'too long or contains invalid characters.')

    @classmethod
    def is_valid_environment_name(cls, name: str) -> bool:
        return isinstance(name, str) and cls.environment_name_re.fullmatch(name) is not None

    key_component_re = re.compile(r'[A-Za-z0-9][A-Za-z0-9._-]*')

    @classmethod
    def validate_key_component(cls, component: str, name: str = 'Key component') -> None:
        require(cls.key_component_re.fullmatch(component) is not None,
                f'{name} contains invalid characters: {component!r}')


config: Config = Config()


class RequirementError(RuntimeError):
    """
    Unlike assertions, unsatisfied requirements do not constitute a bug in the program.
    """


def require(condition: bool, *args, exception: type = RequirementError):
    """
    Raise a RequirementError, or an instance of the given exception class, if
    the given condition is False.

    :param condition: The boolean condition to be required.

    :param args: optional positional arguments to be passed to the exception
                 constructor. Typically this should be a string containing a
                 textual description of the requirement, and optionally one or
                 more values involved in the required condition.

    :param exception: A custom exception class to be instantiated and raised if
                      the condition does not hold.
    """
    reject(not condition, *args, exception=exception)


def reject(condition: bool, *args, exception: type = RequirementError):
    """
    Raise a RequirementError, or an instance of the given exception class, if
    the given condition is True.

    >>> reject(False, 'never raised')

    >>> reject(True, 'Unexpected value', 42)
    Traceback (most recent call last):
    ...
    tfenvs.RequirementError: ('Unexpected value', 42)
    """
    if condition:
        raise exception(*args)
