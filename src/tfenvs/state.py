"""
Locations of remote Terraform state and access to the state records stored
there. Every environment's state lives at a key derived from the environment
name so that no two environments ever share a state record.
"""
from collections.abc import (
    Mapping,
    Sequence,
)
from datetime import (
    datetime,
)
import json
import logging
from pathlib import (
    Path,
)
from typing import (
    Any,
    Optional,
)

import attr
from botocore.exceptions import (
    ClientError,
)

from tfenvs import (
    config,
    require,
)
from tfenvs.deployment import (
    aws,
)
from tfenvs.tfvars import (
    load_tfvars,
)
from tfenvs.types import (
    JSON,
)

log = logging.getLogger(__name__)


def state_key(environment: str,
              suffix: Optional[str] = None,
              prefix: Optional[str] = None
              ) -> str:
    """
    The key of the state record for the given environment.

    >>> state_key('dev', suffix='terraform.tfstate')
    'dev/terraform.tfstate'

    >>> state_key('prod', suffix='terraform.tfstate', prefix='network')
    'network/prod/terraform.tfstate'

    >>> state_key('../prod', suffix='terraform.tfstate')
    Traceback (most recent call last):
    ...
    tfenvs.RequirementError: Environment name '../prod' is too short, too long or contains invalid characters.
    """
    config.validate_environment_name(environment)
    if suffix is None:
        suffix = config.state_suffix
    if prefix is None:
        prefix = config.state_key_prefix
    return '/'.join([*([prefix] if prefix else []), environment, suffix])


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class Backend:
    """
    The configuration of the Terraform backend that stores the state of one
    environment.
    """
    type: str = 's3'
    bucket: Optional[str] = None
    key: Optional[str] = None
    region: Optional[str] = None
    #: Terraform's own DynamoDB-based state lock
    lock_table: Optional[str] = None
    #: Terraform's own S3-based state lock (Terraform 1.10 and later)
    use_lockfile: bool = False
    encrypt: Optional[bool] = None
    #: The file this configuration was read from, or None if it was derived
    #: from the environment name and the global configuration
    source: Optional[Path] = None
    extra: Mapping[str, Any] = attr.ib(factory=dict)

    _known_keys = frozenset({
        'bucket',
        'key',
        'region',
        'dynamodb_table',
        'use_lockfile',
        'encrypt'
    })

    @classmethod
    def from_file(cls, path: Path, type_: str = 's3') -> 'Backend':
        values = load_tfvars(path)
        return cls.from_config(values, type_=type_, source=path)

    @classmethod
    def from_config(cls,
                    values: JSON,
                    *,
                    type_: str = 's3',
                    source: Optional[Path] = None
                    ) -> 'Backend':
        """
        >>> b = Backend.from_config({'bucket': 'tf', 'key': 'dev/terraform.tfstate',
        ...                          'dynamodb_table': 'locks', 'acl': 'private'})
        >>> b.lock_table, b.extra, b.has_locking
        ('locks', {'acl': 'private'}, True)

        The settings of other backend types are passed through verbatim.

        >>> b = Backend.from_config({'bucket': 'tf', 'prefix': 'dev'}, type_='gcs')
        >>> b.bucket, b.extra, b.has_locking
        (None, {'bucket': 'tf', 'prefix': 'dev'}, None)
        """
        if type_ == 's3':
            return cls(bucket=values.get('bucket'),
                       key=values.get('key'),
                       region=values.get('region'),
                       lock_table=values.get('dynamodb_table'),
                       use_lockfile=bool(values.get('use_lockfile', False)),
                       encrypt=values.get('encrypt'),
                       source=source,
                       extra={k: v for k, v in values.items() if k not in cls._known_keys})
        else:
            return cls(type=type_, source=source, extra=dict(values))

    @property
    def is_s3(self) -> bool:
        return self.type == 's3'

    @classmethod
    def for_environment(cls, name: str, type_: str = 's3') -> 'Backend':
        """
        Synthesize the backend configuration for an environment that lacks a
        backend file of its own.
        """
        require(type_ == 's3',
                'Environments without a backend file require an S3 backend',
                name, type_)
        bucket = config.state_bucket
        require(bucket is not None,
                'TFENVS_STATE_BUCKET must be set for environments without a backend file',
                name)
        return cls(bucket=bucket,
                   key=state_key(name),
                   region=config.state_region,
                   lock_table=config.lock_table,
                   encrypt=True)

    @property
    def location(self) -> str:
        """
        >>> Backend(bucket='tf', key='dev/terraform.tfstate').location
        's3://tf/dev/terraform.tfstate'

        >>> Backend(type='gcs', extra={'prefix': 'dev', 'bucket': 'tf'}).location
        'gcs:bucket=tf,prefix=dev'
        """
        if self.is_s3:
            return f's3://{self.bucket}/{self.key}'
        else:
            settings = sorted(self.as_config().items())
            return f'{self.type}:' + ','.join(f'{k}={_cli_value(v)}' for k, v in settings)

    @property
    def has_locking(self) -> Optional[bool]:
        """
        Whether Terraform locks the state record while it is being written, or
        None if that depends on the backend type.
        """
        if self.is_s3:
            return self.lock_table is not None or self.use_lockfile
        else:
            return None


    def as_config(self) -> dict[str, Any]:
        """
        The backend configuration in the form expected by `terraform init
        -backend-config`.

        >>> Backend(bucket='tf', key='dev/terraform.tfstate', region='us-east-1').as_config()
        {'bucket': 'tf', 'key': 'dev/terraform.tfstate', 'region': 'us-east-1'}
        """
        config_ = {
            'bucket': self.bucket,
            'key': self.key,
            'region': self.region,
            'dynamodb_table': self.lock_table,
            'use_lockfile': self.use_lockfile or None,
            'encrypt': self.encrypt,
            **self.extra
        }
        return {k: v for k, v in config_.items() if v is not None}

    def init_args(self) -> list[str]:
        """
        The `-backend-config` arguments selecting this backend.

        >>> Backend(bucket='tf', key='dev/terraform.tfstate', encrypt=True).init_args()
        ['-backend-config=bucket=tf', '-backend-config=key=dev/terraform.tfstate', '-backend-config=encrypt=true']

        >>> Backend(source=Path('/p/environments/dev/backend.tfvars')).init_args()
        ['-backend-config=/p/environments/dev/backend.tfvars']
        """
        if self.source is None:
            return [
                f'-backend-config={k}={_cli_value(v)}'
                for k, v in self.as_config().items()
            ]
        else:
            return [f'-backend-config={self.source.absolute()}']

    def same_location(self, other: Mapping[str, Any]) -> bool:
        """
        True if the given backend configuration, as cached by `terraform init`,
        refers to the same state record as this one.

        >>> b = Backend(type='gcs', extra={'bucket': 'tf', 'prefix': 'dev'})
        >>> b.same_location({'bucket': 'tf', 'prefix': 'dev', 'credentials': None})
        True
        >>> b.same_location({'bucket': 'tf', 'prefix': 'prod'})
        False
        """
        if self.is_s3:
            return (
                other.get('bucket') == self.bucket
                and other.get('key') == self.key
                and other.get('region', self.region) == self.region
            )
        else:
            return all(other.get(k) == v for k, v in self.as_config().items())


def _cli_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    elif isinstance(value, (dict, list)):
        return json.dumps(value)
    else:
        return str(value)


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class StateFingerprint:
    """
    Identifies one revision of a state record. Any write to the record yields
    a different fingerprint.
    """
    etag: str
    version_id: Optional[str] = None
    last_modified: Optional[datetime] = None


@attr.s(frozen=True, kw_only=True, auto_attribs=True)
class StateRecord:
    version: int
    terraform_version: Optional[str]
    serial: int
    lineage: Optional[str]
    resources: Sequence[str]

    @classmethod
    def from_json(cls, state: JSON) -> 'StateRecord':
        """
        >>> r = StateRecord.from_json({
        ...     'version': 4,
        ...     'terraform_version': '1.9.8',
        ...     'serial': 7,
        ...     'lineage': 'b6a2',
        ...     'resources': [
        ...         {
        ...             'mode': 'managed',
        ...             'type': 'aws_instance',
        ...             'name': 'web',
        ...             'instances': [{'index_key': 0}, {'index_key': 1}]
        ...         },
        ...         {
        ...             'module': 'module.net',
        ...             'mode': 'data',
        ...             'type': 'aws_vpc',
        ...             'name': 'main',
        ...             'instances': [{}]
        ...         }
        ...     ]
        ... })
        >>> r.serial, r.resources
        (7, ['aws_instance.web[0]', 'aws_instance.web[1]', 'module.net.data.aws_vpc.main'])
        """
        version = state['version']
        require(version == 4, 'Unsupported state format version', version)
        return cls(version=version,
                   terraform_version=state.get('terraform_version'),
                   serial=state['serial'],
                   lineage=state.get('lineage'),
                   resources=list(cls._addresses(state.get('resources', []))))

    @classmethod
    def _addresses(cls, resources):
        for resource in resources:
            address = '.'.join([
                *([resource['module']] if 'module' in resource else []),
                *(['data'] if resource['mode'] == 'data' else []),
                resource['type'],
                resource['name']
            ])
            for instance in resource.get('instances', []):
                try:
                    index = instance['index_key']
                except KeyError:
                    yield address
                else:
                    yield f'{address}[{json.dumps(index)}]'


class StateStore:
    """
    Read access to the remote state records in S3.
    """

    def fingerprint(self, backend: Backend) -> Optional[StateFingerprint]:
        self._require_s3(backend)
        s3 = aws.s3(backend.region)
        try:
            response = s3.head_object(Bucket=backend.bucket, Key=backend.key)
        except ClientError as e:
            if self._is_not_found(e):
                return None
            else:
                raise
        else:
            return StateFingerprint(etag=response['ETag'],
                                    version_id=response.get('VersionId'),
                                    last_modified=response.get('LastModified'))

    def read(self, backend: Backend) -> Optional[StateRecord]:
        self._require_s3(backend)
        log.info('Reading state from %s', backend.location)
        s3 = aws.s3(backend.region)
        try:
            response = s3.get_object(Bucket=backend.bucket, Key=backend.key)
        except ClientError as e:
            if self._is_not_found(e):
                log.info('No state at %s', backend.location)
                return None
            else:
                raise
        else:
            state = json.load(response['Body'])
            return StateRecord.from_json(state)

    def _require_s3(self, backend: Backend):
        require(backend.is_s3,
                'Only S3 backends are supported', backend.type)
        require(backend.bucket is not None and backend.key is not None,
                'Backend lacks bucket or key', backend.source)

    def _is_not_found(self, e: ClientError) -> bool:
        return e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound')
