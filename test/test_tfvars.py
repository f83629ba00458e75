import json
from pathlib import (
    Path,
)
import tempfile
from textwrap import (
    dedent,
)

from tfenvs import (
    RequirementError,
)
from tfenvs.logging import (
    configure_test_logging,
)
from tfenvs.tfvars import (
    dump_tfvars,
    load_tfvars,
)
from tfenvs_test_case import (
    TfenvsTestCase,
)


# noinspection PyPep8Naming
def setUpModule():
    configure_test_logging()


class TestTfvars(TfenvsTestCase):

    def setUp(self) -> None:
        super().setUp()
        tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(tmp_dir.cleanup)
        self.dir = Path(tmp_dir.name)

    def _write(self, name: str, content: str) -> Path:
        path = self.dir / name
        path.write_text(dedent(content).lstrip())
        return path

    def test_load_hcl(self):
        path = self._write('dev.tfvars', '''
            environment    = "dev"
            instance_count = 1
            enable_backups = false
            zones          = ["us-east-1a", "us-east-1b"]
            tags = {
              team = "infra"
            }
        ''')
        values = load_tfvars(path)
        self.assertEqual('dev', values['environment'])
        self.assertEqual(1, values['instance_count'])
        self.assertIs(False, values['enable_backups'])
        self.assertEqual(['us-east-1a', 'us-east-1b'], values['zones'])
        self.assertEqual({'team': 'infra'}, values['tags'])

    def test_load_json(self):
        path = self.dir / 'prod.tfvars.json'
        path.write_text(json.dumps({'environment': 'prod', 'instance_count': 3}))
        self.assertEqual({'environment': 'prod', 'instance_count': 3},
                         load_tfvars(path))

    def test_load_json_requires_mapping(self):
        path = self.dir / 'prod.tfvars.json'
        path.write_text(json.dumps(['prod']))
        with self.assertRaises(RequirementError):
            load_tfvars(path)

    def test_round_trip(self):
        values = {
            'environment': 'stage',
            'instance_count': 2,
            'tags': {'Name': 'web', 'cost-center': '42'}
        }
        path = self._write('stage.tfvars', dump_tfvars(values))
        self.assertEqual(values, load_tfvars(path))

    def test_commented_placeholders(self):
        text = dump_tfvars({'environment': 'qa'}, commented=['instance_count'])
        path = self._write('qa.tfvars', text)
        self.assertIn('# instance_count =', text)
        self.assertEqual({'environment': 'qa'}, load_tfvars(path))

    def test_comments_are_not_assignments(self):
        path = self._write('prod.tfvars', '''
            # Production sizing, see the capacity plan
            environment    = "prod"
            instance_count = 3 # one per zone
            tags = {
              # billed to the web team
              team = "web"
            }
        ''')
        self.assertEqual({
            'environment': 'prod',
            'instance_count': 3,
            'tags': {'team': 'web'}
        }, load_tfvars(path))

    def test_escaped_template_sequences(self):
        values = {'greeting': 'Hello, ${name}'}
        text = dump_tfvars(values)
        self.assertIn('$${name}', text)
        path = self._write('qa.tfvars', text)
        self.assertEqual(values, load_tfvars(path))
        # Copying the values again must not escape them twice
        path = self._write('qa2.tfvars', dump_tfvars(load_tfvars(path)))
        self.assertEqual(values, load_tfvars(path))
