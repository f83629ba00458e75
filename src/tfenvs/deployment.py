import logging
from pathlib import (
    Path,
)
import threading
from typing import (
    Any,
    Optional,
    TYPE_CHECKING,
)

import boto3
from botocore.awsrequest import (
    AWSPreparedRequest,
)
import botocore.session
import botocore.utils

if TYPE_CHECKING:
    from mypy_boto3_dynamodb import (
        DynamoDBClient,
    )
    from mypy_boto3_s3 import (
        S3Client,
    )

log = logging.getLogger(__name__)

boto3_log = logging.getLogger('tfenvs.boto3')


class AWS:
    class _PerThread(threading.local):
        session: Optional[boto3.session.Session] = None

    def __init__(self) -> None:
        super().__init__()
        self._per_thread = self._PerThread()

    def discard_all_sessions(self):
        self._per_thread = self._PerThread()

    @property
    def boto3_session(self) -> boto3.session.Session:
        """
        The Boto3 session for the current thread.
        """
        session = self._per_thread.session
        if session is None:
            session = self._create_boto3_session()
            self._per_thread.session = session
        return session

    def _create_boto3_session(self) -> boto3.session.Session:
        session = botocore.session.get_session()
        cli_cache = Path('~', '.aws', 'cli', 'cache').expanduser()
        if cli_cache.exists():
            # Make the AssumeRole credential provider use the same cache as the
            # AWS CLI so that an MFA code only needs to be entered once
            resolver = session.get_component('credential_provider')
            provider = resolver.get_provider('assume-role')
            provider.cache = botocore.utils.JSONFileCache(cli_cache)
        return boto3.session.Session(botocore_session=session)

    def client(self, service_name: str, *, region_name: Optional[str] = None, **kwargs):
        """
        Return a Boto3 client that only shares its session with clients
        created in the same thread. Requests are logged at DEBUG level.

        Caching the result of this function is not necessary and will be harmful
        if the cached value is used by a thread other than the one that called
        this function.
        """
        client = self.boto3_session.client(service_name, region_name=region_name, **kwargs)
        events = client.meta.events
        events.register_last(self._request_event_name, self._log_client_request)
        return client

    def s3(self, region_name: Optional[str] = None) -> 'S3Client':
        return self.client('s3', region_name=region_name)

    def dynamodb(self, region_name: Optional[str] = None) -> 'DynamoDBClient':
        return self.client('dynamodb', region_name=region_name)

    _request_event_name = 'before-send'

    def _log_client_request(self,
                            event_name: str,
                            request: AWSPreparedRequest,
                            **_kwargs: Any
                            ) -> None:
        prefix, _, event_name = event_name.partition('.')
        assert prefix == self._request_event_name, prefix
        boto3_log.debug('%s:\tMaking %s request to %s',
                        event_name,
                        request.method,
                        request.url)
        return None


aws = AWS()
