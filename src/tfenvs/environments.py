from collections.abc import (
    Mapping,
    Sequence,
)
from enum import (
    Enum,
)
import logging
from pathlib import (
    Path,
)
from typing import (
    Any,
    Optional,
)

import attr
from more_itertools import (
    only,
)

from tfenvs import (
    RequirementError,
    cached_property,
    config,
    reject,
    require,
)
from tfenvs.definitions import (
    ResourceDefinitionSet,
)
from tfenvs.files import (
    write_file_atomically,
)
from tfenvs.state import (
    Backend,
    state_key,
)
from tfenvs.tfvars import (
    dump_tfvars,
    load_tfvars,
)

log = logging.getLogger(__name__)


class Layout(Enum):
    #: One parameter file per environment, all in the same directory
    flat = 'flat'
    #: One directory per environment, containing a parameter file and,
    #: optionally, a backend file
    nested = 'nested'


class EnvironmentNotFound(RequirementError):

    def __init__(self, name: str, names: Sequence[str]) -> None:
        super().__init__(f'No such environment {name!r}, must be one of {list(names)!r}')


class MixedLayoutError(RequirementError):

    def __init__(self, path: Path) -> None:
        super().__init__(
            f'{path} contains both environment directories and parameter files. '
            f'Use either one parameter file per environment or one directory '
            f'per environment, but not both.'
        )


flat_parameter_suffixes = ('.tfvars', '.tfvars.json')

nested_parameter_files = ('terraform.tfvars', 'terraform.tfvars.json')

backend_files = ('backend.tfvars', 'backend.hcl', 'backend.tfvars.json')


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class EnvironmentDescriptor:
    name: str
    parameters: Mapping[str, Any]
    parameter_file: Path
    backend: Backend
    layout: Layout

    @property
    def state_key(self) -> Optional[str]:
        return self.backend.key

    @property
    def derived_state_key(self) -> str:
        return state_key(self.name)


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class Project:
    """
    A shared Terraform configuration and the environments it is deployed to.
    """
    root: Path
    environments_dir: Path
    #: One of `auto`, `flat` or `nested`
    layout_setting: str = 'auto'

    @classmethod
    def from_config(cls,
                    root: Optional[Path] = None,
                    environments_dir: Optional[Path] = None,
                    layout: Optional[str] = None
                    ) -> 'Project':
        if root is None:
            root = config.project_dir
            if environments_dir is None:
                environments_dir = config.environments_dir
        elif environments_dir is None:
            environments_dir = root / config.environ['TFENVS_ENVIRONMENTS_DIR']
        if layout is None:
            layout = config.layout
        require(layout in config.layouts, 'Invalid layout', layout)
        return cls(root=root,
                   environments_dir=environments_dir,
                   layout_setting=layout)

    @cached_property
    def definitions(self) -> ResourceDefinitionSet:
        return ResourceDefinitionSet.load(self.root)

    @property
    def backend_type(self) -> str:
        """
        The type of the backend declared by the shared configuration, S3 if it
        declares none.
        """
        backend_type = self.definitions.backend_type
        return 's3' if backend_type is None else backend_type

    @cached_property
    def layout(self) -> Layout:
        if self.layout_setting == 'auto':
            return self._detect_layout()
        else:
            return Layout(self.layout_setting)

    def _detect_layout(self) -> Layout:
        path = self.environments_dir
        require(path.is_dir(), 'Environments directory does not exist', str(path))
        nested = bool(self._environment_dirs())
        flat = bool(self._flat_parameter_files())
        reject(nested and flat, path, exception=MixedLayoutError)
        require(nested or flat, 'No environments found', str(path))
        layout = Layout.nested if nested else Layout.flat
        log.debug('Detected %s layout in %s', layout.value, path)
        return layout

    def _environment_dirs(self) -> list[Path]:
        return sorted(
            p for p in self.environments_dir.iterdir()
            if p.is_dir() and not p.name.startswith('.')
        )

    def _is_empty(self) -> bool:
        return not self._environment_dirs() and not self._flat_parameter_files()

    def _flat_parameter_files(self) -> dict[str, Path]:
        files = {}
        for p in sorted(self.environments_dir.iterdir()):
            if p.is_file() and not p.name.startswith('.'):
                for suffix in flat_parameter_suffixes:
                    if p.name.endswith(suffix):
                        name = p.name.removesuffix(suffix)
                        reject(name in files,
                               'More than one parameter file for environment',
                               name, str(files.get(name)), str(p))
                        files[name] = p
        return files

    def names(self) -> list[str]:
        if not self.environments_dir.is_dir():
            return []
        elif self.layout_setting == 'auto' and self._is_empty():
            return []
        elif self.layout is Layout.nested:
            names = [p.name for p in self._environment_dirs()]
        elif self.layout is Layout.flat:
            names = list(self._flat_parameter_files().keys())
        else:
            assert False, self.layout
        for name in names:
            config.validate_environment_name(name)
        return sorted(names)

    def environment(self, name: str) -> EnvironmentDescriptor:
        names = self.names()
        require(name in names, name, names, exception=EnvironmentNotFound)
        if self.layout is Layout.nested:
            env_dir = self.environments_dir / name
            parameter_file = self._one_file(env_dir, [
                *nested_parameter_files,
                *(name + suffix for suffix in flat_parameter_suffixes)
            ])
            require(parameter_file is not None,
                    'Environment directory lacks a parameter file',
                    str(env_dir), nested_parameter_files)
            backend_file = self._one_file(env_dir, backend_files)
            if backend_file is None:
                backend = Backend.for_environment(name, self.backend_type)
            else:
                backend = Backend.from_file(backend_file, self.backend_type)
        elif self.layout is Layout.flat:
            parameter_file = self._flat_parameter_files()[name]
            backend = Backend.for_environment(name, self.backend_type)
        else:
            assert False, self.layout
        return EnvironmentDescriptor(name=name,
                                     parameters=load_tfvars(parameter_file),
                                     parameter_file=parameter_file,
                                     backend=backend,
                                     layout=self.layout)

    def _one_file(self, dir_path: Path, file_names: Sequence[str]) -> Optional[Path]:
        candidates = [dir_path / n for n in file_names if (dir_path / n).is_file()]
        return only(candidates,
                    too_long=RequirementError('Ambiguous environment files',
                                              list(map(str, candidates))))

    def environments(self) -> list[EnvironmentDescriptor]:
        return [self.environment(name) for name in self.names()]

    def scaffold(self, name: str, template: Optional[str] = None) -> list[Path]:
        """
        Create the files for a new environment and return their paths. The
        parameters are copied from the template environment, if one is given.
        Required variables that lack a value are written as commented-out
        placeholders.
        """
        config.validate_environment_name(name)
        existing = self.names()
        reject(name in existing, 'Environment already exists', name)
        if existing:
            layout = self.layout
        else:
            layout = Layout.nested if self.layout_setting == 'auto' else Layout(self.layout_setting)
        if template is None:
            parameters = {}
            template_backend = None
        else:
            template_env = self.environment(template)
            parameters = dict(template_env.parameters)
            template_backend = template_env.backend
        variables = self.definitions.variables
        if 'environment' in variables:
            parameters['environment'] = name
        placeholders = sorted(self.definitions.required_variables - parameters.keys())
        created = []
        if layout is Layout.nested:
            env_dir = self.environments_dir / name
            env_dir.mkdir(parents=True)
            parameter_file = env_dir / nested_parameter_files[0]
            backend = self._scaffold_backend(name, template, template_backend)
            if backend is not None:
                backend_file = env_dir / backend_files[0]
                self._write(backend_file, dump_tfvars(backend.as_config()))
                created.append(backend_file)
        elif layout is Layout.flat:
            self.environments_dir.mkdir(parents=True, exist_ok=True)
            parameter_file = self.environments_dir / (name + flat_parameter_suffixes[0])
        else:
            assert False, layout
        self._write(parameter_file, dump_tfvars(parameters, commented=placeholders))
        created.insert(0, parameter_file)
        # Reset the cached layout so that it reflects the new environment. The
        # instance is frozen, so `del self.layout` would be rejected.
        self.__dict__.pop('layout', None)
        return created

    def _scaffold_backend(self,
                          name: str,
                          template_name: Optional[str],
                          template: Optional[Backend]
                          ) -> Optional[Backend]:
        if template is not None and template.source is not None:
            if template.is_s3:
                return attr.evolve(template, key=state_key(name), source=None)
            else:
                extra = {
                    k: _rename_path(v, template_name, name)
                    for k, v in template.extra.items()
                }
                return attr.evolve(template, extra=extra, source=None)
        elif config.state_bucket is not None:
            return Backend.for_environment(name, self.backend_type)
        else:
            return None

    def _write(self, path: Path, content: str):
        log.info('Writing %s', path)
        with write_file_atomically(path) as f:
            f.write(content)


def _rename_path(value: Any, old: Optional[str], new: str) -> Any:
    """
    Replace the path components of the given setting that are equal to the
    old environment name.

    >>> _rename_path('states/prod', 'prod', 'qa')
    'states/qa'

    >>> _rename_path('production', 'prod', 'qa'), _rename_path(True, 'prod', 'qa')
    ('production', True)
    """
    if isinstance(value, str) and old is not None:
        return '/'.join(new if c == old else c for c in value.split('/'))
    else:
        return value
