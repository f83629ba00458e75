import os
from unittest.mock import (
    patch,
)

from tfenvs.environments import (
    Project,
)
from tfenvs.logging import (
    configure_test_logging,
)
from tfenvs.validation import (
    Severity,
    errors,
    validate,
    warnings,
)
from tfenvs_test_case import (
    ProjectTestCase,
)


# noinspection PyPep8Naming
def setUpModule():
    configure_test_logging()


class TestValidation(ProjectTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.write_definitions()
        self.write_nested_environment('dev', 1)
        self.write_nested_environment('prod', 3)

    def _validate(self, names=None):
        project = Project.from_config(root=self.root)
        return validate(project, names)

    def _messages(self, problems):
        return [(p.environment, p.message) for p in problems]

    def test_valid(self):
        self.assertEqual([], self._validate())

    def test_no_environments(self):
        project = Project.from_config(root=self.root,
                                      environments_dir=self.root / 'missing')
        problems = validate(project)
        self.assertEqual(1, len(errors(problems)))

    def test_unknown_environment(self):
        problems = self._validate(['dev', 'qa'])
        self.assertEqual([('qa', 'No such environment')],
                         self._messages(errors(problems)))

    def test_missing_parameter(self):
        self.write('environments/prod/terraform.tfvars', '''
            environment = "prod"
        ''')
        problems = errors(self._validate())
        self.assertEqual(1, len(problems))
        self.assertEqual('prod', problems[0].environment)
        self.assertIn("'instance_count'", problems[0].message)

    def test_missing_parameter_of_other_environment_ignored(self):
        self.write('environments/prod/terraform.tfvars', '''
            environment = "prod"
        ''')
        self.assertEqual([], errors(self._validate(['dev'])))

    def test_undeclared_parameter(self):
        self.write('environments/dev/terraform.tfvars', '''
            environment = "dev"
            instance_count = 1
            instance_cuont = 2
        ''')
        problems = self._validate()
        self.assertEqual([], errors(problems))
        self.assertEqual(1, len(warnings(problems)))
        self.assertIn("'instance_cuont'", warnings(problems)[0].message)

    def test_shared_state_key(self):
        self.write_nested_environment('prod', 3, key='dev/terraform.tfstate')
        problems = errors(self._validate())
        messages = self._messages(problems)
        self.assertIn((None, "Environments ['dev', 'prod'] share the state record "
                             "at s3://state-bucket/dev/terraform.tfstate"),
                      messages)
        self.assertIn('prod', [environment for environment, _ in messages])

    def test_same_key_in_different_buckets(self):
        self.write_nested_environment('prod', 3, bucket='prod-state')
        self.assertEqual([], errors(self._validate()))

    def test_key_not_derived_from_name(self):
        self.write_nested_environment('prod', 3, key='production.tfstate')
        problems = errors(self._validate())
        self.assertEqual(['prod'], [p.environment for p in problems])

    def test_embedded_literal(self):
        self.write('extra.tf', '''
            resource "aws_s3_bucket" "logs" {
              bucket = "prod-logs"
            }
        ''')
        problems = errors(self._validate())
        self.assertEqual(1, len(problems))
        self.assertIsNone(problems[0].environment)
        self.assertIn("'prod-logs'", problems[0].message)

    def test_allowlisted_literal(self):
        self.write('extra.tf', '''
            resource "aws_s3_bucket" "logs" {
              bucket = "prod-logs"
            }
        ''')
        with patch.dict(os.environ, TFENVS_LITERAL_ALLOWLIST='["prod-logs"]'):
            self.assertEqual([], errors(self._validate()))

    def test_missing_locking(self):
        self.write_nested_environment('dev', 1, lock_table=None)
        problems = self._validate()
        self.assertEqual([], errors(problems))
        self.assertEqual([('dev', Severity.warning)],
                         [(p.environment, p.severity) for p in problems])

    def test_missing_backend_block(self):
        (self.root / 'backend.tf').unlink()
        problems = errors(self._validate())
        self.assertEqual(1, len(problems))
        self.assertIn('backend', problems[0].message)


class TestOtherBackendValidation(ProjectTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.write_gcs_definitions()
        self.write_gcs_environment('dev', 1)
        self.write_gcs_environment('prod', 3)

    def _validate(self):
        return validate(Project.from_config(root=self.root))

    def test_valid(self):
        self.assertEqual([], self._validate())

    def test_shared_state(self):
        self.write_gcs_environment('prod', 3, prefix='states/dev')
        problems = errors(self._validate())
        self.assertEqual([(None, "Environments ['dev', 'prod'] share the state record "
                                 "at gcs:bucket=tf-state,prefix=states/dev")],
                         [(p.environment, p.message) for p in problems])
