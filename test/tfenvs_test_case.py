from collections.abc import (
    Mapping,
)
from contextlib import (
    AbstractContextManager,
)
import os
from pathlib import (
    Path,
)
from re import (
    escape,
)
import tempfile
from textwrap import (
    dedent,
)
from typing import (
    Optional,
)
from unittest import (
    TestCase,
)
from unittest.mock import (
    patch,
)
import warnings

import boto3.session
from botocore.credentials import (
    Credentials,
)
import botocore.session
import moto.backends

from tfenvs.deployment import (
    aws,
)
from tfenvs.logging import (
    get_test_logger,
)

log = get_test_logger(__name__)


class TfenvsTestCase(TestCase):
    _catch_warnings: Optional[AbstractContextManager]
    _caught_warnings: list[warnings.WarningMessage]

    @classmethod
    def setUpClass(cls) -> None:
        super().setUpClass()

        class RE(str):
            pass

        catch_warnings = warnings.catch_warnings(record=True)
        # Use tuple assignment to modify state atomically
        cls._catch_warnings, cls._caught_warnings = catch_warnings, catch_warnings.__enter__()
        permitted_warnings_ = {
            ResourceWarning: {
                RE(r'.*<ssl\.SSLSocket.*>'),
                RE(r'.*<socket\.socket.*>'),
            },
            DeprecationWarning: {
                RE(r'datetime\.datetime\.utc\w+\(\) is deprecated.*'),
            }
        }
        for warning_class, message_patterns in permitted_warnings_.items():
            for message_pattern in message_patterns:
                if not isinstance(message_pattern, RE):
                    message_pattern = escape(message_pattern)
                warnings.filterwarnings('ignore',
                                        message=message_pattern,
                                        category=warning_class)

    @classmethod
    def tearDownClass(cls) -> None:
        if cls._catch_warnings is not None:
            cls._catch_warnings.__exit__(None, None, None)
            caught_warnings = cls._caught_warnings
            # Use tuple assignment to modify state atomically
            cls._catch_warnings, cls._caught_warnings = None, []
            if caught_warnings:
                for warning in caught_warnings:
                    log.error('Caught unexpected warning: %s', warning)
                assert False, list(map(str, caught_warnings))
        super().tearDownClass()

    @classmethod
    def addClassPatch(cls, instance: patch) -> None:
        instance.start()
        cls.addClassCleanup(instance.stop)

    def addPatch(self, instance) -> None:
        instance.start()
        self.addCleanup(instance.stop)


class TfenvsUnitTestCase(TfenvsTestCase):

    @classmethod
    def setUpClass(cls) -> None:
        super().setUpClass()
        cls._patch_aws_credentials()
        cls._patch_aws_region()
        cls._patch_tfenvs_env()

    def setUp(self) -> None:
        super().setUp()
        # Moto backends are reset to ensure no mock resources are left over if
        # a test fails to clean up after itself.
        self._reset_moto()

    def _reset_moto(self):
        # The backends listed here need to match the extras specified for the
        # `moto` dependency in pyproject.toml.
        for name in ('s3', 'dynamodb'):
            backends = moto.backends.get_backend(name)
            for account_id, account_backends in backends.items():
                for region_name, backend in account_backends.items():
                    backend.reset()

    @classmethod
    def _patch_aws_credentials(cls):
        # Discard cached Boto3/botocore sessions
        aws.discard_all_sessions()
        cls.addClassCleanup(aws.discard_all_sessions)

        # Save and then reset the default boto3session. This overrides any
        # session customizations which interfere with moto patchers, rendering
        # them ineffective.
        cls.addClassPatch(patch.object(boto3, 'DEFAULT_SESSION', None))

        # This ensures that we don't accidentally use actual cloud resources in
        # unit tests and that credentials from an unmocked use of boto3 in one
        # test don't leak into a mocked use of boto3 in another.

        def dummy_get_credentials(_self):
            return Credentials(access_key='test-key',
                               secret_key='test-secret-key',
                               token='test-session-token')

        cls.addClassPatch(patch.object(botocore.session.Session,
                                       'get_credentials',
                                       dummy_get_credentials))

        cls.addClassPatch(patch.object(boto3.session.Session,
                                       'get_credentials',
                                       dummy_get_credentials))

    _aws_test_region = 'us-east-1'

    @classmethod
    def _patch_aws_region(cls):
        cls.addClassPatch(patch.dict(os.environ,
                                     AWS_DEFAULT_REGION=cls._aws_test_region))

    #: Overrides of TFENVS_… variables for every test in the class. A value of
    #: None removes the variable from the environment.
    tfenvs_env: Mapping[str, Optional[str]] = {}

    @classmethod
    def _patch_tfenvs_env(cls):
        env = {k: v for k, v in os.environ.items() if not k.startswith('TFENVS_')}
        env.update((k, v) for k, v in cls.tfenvs_env.items() if v is not None)
        cls.addClassPatch(patch.dict(os.environ, env, clear=True))


class ProjectTestCase(TfenvsUnitTestCase):
    """
    Provides a temporary directory for each test to build a Terraform project
    in.
    """

    variables_tf = '''
        variable "environment" {
          type = string
        }
        variable "instance_count" {
          type = number
        }
        variable "name_prefix" {
          type    = string
          default = "app"
        }
    '''

    main_tf = '''
        resource "aws_instance" "web" {
          count = var.instance_count
          ami   = "ami-12345678"
          tags = {
            Name = "${var.name_prefix}-${var.environment}"
          }
        }
    '''

    backend_tf = '''
        terraform {
          backend "s3" {}
        }
    '''

    def setUp(self) -> None:
        super().setUp()
        tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(tmp_dir.cleanup)
        self.root = Path(tmp_dir.name)
        self.environments_dir = self.root / 'environments'

    def write(self, relative_path: str, content: str) -> Path:
        path = self.root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dedent(content).lstrip())
        return path

    def write_definitions(self):
        self.write('variables.tf', self.variables_tf)
        self.write('main.tf', self.main_tf)
        self.write('backend.tf', self.backend_tf)

    def write_nested_environment(self,
                                 name: str,
                                 instance_count: int,
                                 key: Optional[str] = None,
                                 bucket: str = 'state-bucket',
                                 lock_table: Optional[str] = 'locks'):
        if key is None:
            key = f'{name}/terraform.tfstate'
        self.write(f'environments/{name}/terraform.tfvars', f'''
            environment = "{name}"
            instance_count = {instance_count}
        ''')
        backend = [
            f'bucket = "{bucket}"',
            f'key = "{key}"',
            'region = "us-east-1"'
        ]
        if lock_table is not None:
            backend.append(f'dynamodb_table = "{lock_table}"')
        self.write(f'environments/{name}/backend.tfvars',
                   ''.join(line + '\n' for line in backend))

    def write_flat_environment(self, name: str, instance_count: int):
        self.write(f'environments/{name}.tfvars', f'''
            environment = "{name}"
            instance_count = {instance_count}
        ''')

    def write_gcs_definitions(self):
        self.write_definitions()
        self.write('backend.tf', '''
            terraform {
              backend "gcs" {}
            }
        ''')

    def write_gcs_environment(self,
                              name: str,
                              instance_count: int,
                              prefix: Optional[str] = None):
        if prefix is None:
            prefix = f'states/{name}'
        self.write(f'environments/{name}/terraform.tfvars', f'''
            environment = "{name}"
            instance_count = {instance_count}
        ''')
        self.write(f'environments/{name}/backend.tfvars', f'''
            bucket = "tf-state"
            prefix = "{prefix}"
        ''')
