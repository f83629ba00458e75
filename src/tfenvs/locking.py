"""
Serialize mutations of an environment's state. A plain S3 backend does not
prevent two concurrent `apply` or `destroy` invocations from interleaving their
writes to the same state record, which can corrupt the record or leave behind
duplicated or orphaned resources. A StateLock is held for the whole duration
of such an operation, including the `init` that precedes it.
"""
from datetime import (
    datetime,
    timezone,
)
import getpass
import logging
import socket
from typing import (
    Optional,
)
import uuid

from botocore.exceptions import (
    ClientError,
)

from tfenvs import (
    RequirementError,
    require,
)
from tfenvs.deployment import (
    aws,
)
from tfenvs.state import (
    Backend,
)

log = logging.getLogger(__name__)


class StateLockedError(RequirementError):

    def __init__(self, lock_id: str, holder: Optional[dict[str, str]]) -> None:
        if holder is None:
            holder = {}
        super().__init__(
            f'The state at {lock_id!r} is locked by {holder.get("Owner", "an unknown owner")} '
            f'since {holder.get("Created", "an unknown time")} (lock {holder.get("Token")}). '
            f'If that operation is known to have ended, release the lock with '
            f'`tfenvs unlock`.'
        )
        self.holder = holder


def default_owner() -> str:
    return f'{getpass.getuser()}@{socket.gethostname()}'


class StateLock:
    """
    An advisory lock on the state record of one environment, implemented as
    an item in a DynamoDB table with a string hash key named `LockID`. The
    table can be the one Terraform uses for its own locking because the lock
    IDs used here are distinct from Terraform's.
    """

    def __init__(self,
                 table: str,
                 backend: Backend,
                 owner: Optional[str] = None,
                 ) -> None:
        super().__init__()
        self.table = table
        self.backend = backend
        self.owner = default_owner() if owner is None else owner
        self.token: Optional[str] = None

    @classmethod
    def lock_id(cls, backend: Backend) -> str:
        """
        >>> StateLock.lock_id(Backend(bucket='tf', key='dev/terraform.tfstate'))
        'tfenvs/tf/dev/terraform.tfstate'

        >>> StateLock.lock_id(Backend(type='gcs', extra={'bucket': 'tf', 'prefix': 'dev'}))
        'tfenvs/gcs:bucket=tf,prefix=dev'
        """
        if backend.is_s3:
            return f'tfenvs/{backend.bucket}/{backend.key}'
        else:
            return f'tfenvs/{backend.location}'

    @property
    def _dynamodb(self):
        return aws.dynamodb(self.backend.region)

    def _key(self):
        return {'LockID': {'S': self.lock_id(self.backend)}}

    def acquire(self) -> None:
        require(self.token is None, 'Lock is already held', self.lock_id(self.backend))
        token = str(uuid.uuid4())
        created = datetime.now(timezone.utc).isoformat()
        lock_id = self.lock_id(self.backend)
        log.info('Acquiring lock %r in table %r', lock_id, self.table)
        try:
            self._dynamodb.put_item(
                TableName=self.table,
                Item={
                    **self._key(),
                    'Token': {'S': token},
                    'Owner': {'S': self.owner},
                    'Created': {'S': created}
                },
                ConditionExpression='attribute_not_exists(LockID)'
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise StateLockedError(lock_id, self.holder())
            else:
                raise
        else:
            self.token = token

    def release(self) -> None:
        lock_id = self.lock_id(self.backend)
        require(self.token is not None, 'Lock is not held', lock_id)
        log.info('Releasing lock %r in table %r', lock_id, self.table)
        try:
            self._dynamodb.delete_item(
                TableName=self.table,
                Key=self._key(),
                ConditionExpression='#token = :token',
                ExpressionAttributeNames={'#token': 'Token'},
                ExpressionAttributeValues={':token': {'S': self.token}}
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise RequirementError('Lock was released or taken over by another owner',
                                       lock_id, self.holder())
            else:
                raise
        finally:
            self.token = None

    def holder(self) -> Optional[dict[str, str]]:
        response = self._dynamodb.get_item(TableName=self.table,
                                           Key=self._key(),
                                           ConsistentRead=True)
        try:
            item = response['Item']
        except KeyError:
            return None
        else:
            return {k: v['S'] for k, v in item.items() if 'S' in v}

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.release()
        else:
            # Don't mask the exception raised while the lock was held
            try:
                self.release()
            except (ClientError, RequirementError):
                log.warning('Failed to release lock %r', self.lock_id(self.backend),
                            exc_info=True)

    @classmethod
    def force_release(cls, table: str, backend: Backend) -> Optional[dict[str, str]]:
        """
        Remove the lock regardless of its owner and return the information
        about the previous holder, or None if the lock wasn't held.
        """
        lock = cls(table, backend)
        holder = lock.holder()
        if holder is None:
            log.info('Lock %r is not held', cls.lock_id(backend))
        else:
            log.warning('Forcibly releasing lock %r held by %r', cls.lock_id(backend), holder)
            lock._dynamodb.delete_item(TableName=table, Key=lock._key())
        return holder
