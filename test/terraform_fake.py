import json
from pathlib import (
    Path,
)
import subprocess
from typing import (
    Optional,
)

from botocore.exceptions import (
    ClientError,
)

from tfenvs.deployment import (
    aws,
)
from tfenvs.tfvars import (
    load_tfvars,
)


class FakeTerraform:
    """
    Stands in for `subprocess.run` and mimics the subset of the Terraform CLI
    that is used by the Selector, for a configuration that declares a counted
    `aws_instance.web` resource. State records are kept in (mocked) S3, those
    of backends other than S3 in memory.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        #: If set, `apply` and `destroy` also touch the state record at this
        #: key, simulating a misconfiguration that leaks across environments
        self.stray_key: Optional[str] = None
        #: State records of backends other than S3, by backend configuration
        self.other_states: dict[str, dict] = {}

    def __call__(self, args, *, check=False, cwd=None, stdout=None, stderr=None, **_kwargs):
        args = list(args)
        self.calls.append(args)
        binary, command, *options = args
        cwd = Path(cwd)
        returncode, output, error = getattr(self, '_' + command)(cwd, options)
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, args, output, error)
        return subprocess.CompletedProcess(args,
                                           returncode,
                                           output if stdout == subprocess.PIPE else None,
                                           error if stderr == subprocess.PIPE else None)

    def commands(self, command: str) -> list[list[str]]:
        return [args for args in self.calls if args[1] == command]

    def _cache_path(self, cwd: Path) -> Path:
        return cwd / '.terraform' / 'terraform.tfstate'

    def _backend(self, cwd: Path) -> dict:
        with open(self._cache_path(cwd)) as f:
            return json.load(f)['backend']['config']

    def _version(self, cwd, options):
        return 0, json.dumps({'terraform_version': '1.9.8'}), ''

    def _init(self, cwd, options):
        config = {}
        for option in options:
            if option.startswith('-backend-config='):
                value = option.removeprefix('-backend-config=')
                path = Path(value)
                if path.is_absolute() and path.is_file():
                    config.update(load_tfvars(path))
                else:
                    k, _, v = value.partition('=')
                    config[k] = v
        cache_path = self._cache_path(cwd)
        if cache_path.exists() and '-reconfigure' not in options:
            if self._backend(cwd) != config:
                return 1, '', 'Error: Backend configuration changed'
        cache_path.parent.mkdir(exist_ok=True)
        with open(cache_path, 'w') as f:
            json.dump({'version': 3, 'backend': {'type': 's3', 'config': config}}, f)
        return 0, 'Terraform has been successfully initialized!', ''

    def _var_file(self, options) -> dict:
        var_file = next(o for o in options if o.startswith('-var-file='))
        return load_tfvars(Path(var_file.removeprefix('-var-file=')))

    def _read_state(self, backend) -> Optional[dict]:
        if 'key' not in backend:
            return self.other_states.get(self._backend_id(backend))
        try:
            response = aws.s3().get_object(Bucket=backend['bucket'], Key=backend['key'])
        except ClientError:
            return None
        else:
            return json.load(response['Body'])

    def _write_state(self, backend, count: int, serial: int):
        state = {
            'version': 4,
            'terraform_version': '1.9.8',
            'serial': serial,
            'lineage': 'fake-lineage',
            'outputs': {},
            'resources': [
                {
                    'mode': 'managed',
                    'type': 'aws_instance',
                    'name': 'web',
                    'instances': [{'index_key': i} for i in range(count)]
                }
            ] if count else []
        }
        if 'key' in backend:
            aws.s3().put_object(Bucket=backend['bucket'],
                                Key=backend['key'],
                                Body=json.dumps(state).encode())
        else:
            self.other_states[self._backend_id(backend)] = state

    def _backend_id(self, backend) -> str:
        return json.dumps(backend, sort_keys=True)

    def _current(self, backend) -> set[str]:
        state = self._read_state(backend)
        if state is None:
            return set()
        else:
            return {
                f"aws_instance.web[{instance['index_key']}]"
                for resource in state['resources']
                for instance in resource['instances']
            }

    def _changes(self, cwd, options) -> list[dict]:
        count = self._var_file(options)['instance_count']
        desired = {f'aws_instance.web[{i}]' for i in range(count)}
        current = self._current(self._backend(cwd))
        return [
            {
                'address': address,
                'type': 'aws_instance',
                'change': {'actions': [action]}
            }
            for addresses, action in [
                (desired - current, 'create'),
                (current - desired, 'delete'),
                (desired & current, 'no-op')
            ]
            for address in sorted(addresses)
        ]

    def _plan(self, cwd, options):
        changes = self._changes(cwd, options)
        pending = any(c['change']['actions'] != ['no-op'] for c in changes)
        for option in options:
            if option.startswith('-out='):
                with open(option.removeprefix('-out='), 'w') as f:
                    json.dump({'format_version': '1.2', 'resource_changes': changes}, f)
        if '-detailed-exitcode' in options and pending:
            return 2, '', ''
        else:
            return 0, '', ''

    def _show(self, cwd, options):
        assert options[0] == '-json', options
        with open(options[1]) as f:
            return 0, f.read(), ''

    def _mutate(self, cwd, options, destroy):
        if '-auto-approve' not in options:
            return 1, '', 'Error: Apply cancelled'
        backend = self._backend(cwd)
        state = self._read_state(backend)
        serial = 1 if state is None else state['serial'] + 1
        count = 0 if destroy else self._var_file(options)['instance_count']
        self._write_state(backend, count, serial)
        if self.stray_key is not None:
            self._write_state({**backend, 'key': self.stray_key}, count, serial)
        return 0, '', ''

    def _apply(self, cwd, options):
        return self._mutate(cwd, options, destroy=False)

    def _destroy(self, cwd, options):
        return self._mutate(cwd, options, destroy=True)

    def _state(self, cwd, options):
        assert options == ['list'], options
        state = self._read_state(self._backend(cwd))
        if state is None:
            return 1, '', 'No state file was found!'
        else:
            return 0, '\n'.join(sorted(self._current(self._backend(cwd)))), ''
