"""
Run Terraform against exactly one environment of a multi-environment project.
The parameter file and the remote state location are both derived from the
name of the selected environment.
"""
import argparse
import json
import logging
from pathlib import (
    Path,
)
import subprocess
import sys
from typing import (
    Optional,
)

from tfenvs import (
    RequirementError,
    config,
)
from tfenvs.args import (
    TfenvsArgumentHelpFormatter,
)
from tfenvs.environments import (
    Project,
)
from tfenvs.locking import (
    StateLock,
)
from tfenvs.logging import (
    configure_script_logging,
)
from tfenvs.terraform import (
    Selector,
)
from tfenvs.tfvars import (
    redact,
)
from tfenvs.validation import (
    error_message,
    errors,
    validate,
)

log = logging.getLogger(__name__)


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog='tfenvs',
                                description=__doc__,
                                formatter_class=TfenvsArgumentHelpFormatter)
    p.add_argument('--project-dir', type=Path, default=None,
                   help='The directory containing the shared Terraform '
                        'configuration. Defaults to TFENVS_PROJECT_DIR.')
    p.add_argument('--environments-dir', type=Path, default=None,
                   help='The directory containing the environments. Defaults '
                        'to TFENVS_ENVIRONMENTS_DIR relative to the project '
                        'directory.')
    p.add_argument('--layout', choices=config.layouts, default=None,
                   help='How the environments are laid out. Defaults to '
                        'TFENVS_LAYOUT.')
    sps = p.add_subparsers(dest='command', metavar='COMMAND')

    def add_parser(name, help):
        return sps.add_parser(name,
                              help=help,
                              description=help,
                              formatter_class=TfenvsArgumentHelpFormatter)

    add_parser('list', 'List the environments, their parameter files and state locations')

    sp = add_parser('validate', 'Check the project for missing parameters, '
                                'shared state locations and environment-specific '
                                'literals in the shared configuration')
    sp.add_argument('environments', metavar='ENV', nargs='*',
                    help='The environments to check. All environments are '
                         'checked if none are given.')

    sp = add_parser('backend', 'Print the backend configuration of an environment as JSON')
    sp.add_argument('environment', metavar='ENV')

    sp = add_parser('init', 'Initialize the working directory with the backend of an environment')
    sp.add_argument('environment', metavar='ENV')
    sp.add_argument('--reconfigure', action=argparse.BooleanOptionalAction, default=None,
                    help='Pass -reconfigure to `terraform init`. By default it is '
                         'passed only when the working directory was initialized '
                         'with the backend of a different environment.')

    sp = add_parser('plan', 'Plan the changes to an environment')
    sp.add_argument('environment', metavar='ENV')
    sp.add_argument('--out', type=Path, default=None,
                    help='Where to save the plan. Defaults to '
                         '.terraform/ENV.tfplan in the project directory.')

    for command, help in [
        ('apply', 'Create or update the resources of an environment'),
        ('destroy', 'Destroy the resources of an environment')
    ]:
        sp = add_parser(command, help)
        sp.add_argument('environment', metavar='ENV')
        sp.add_argument('--auto-approve', action='store_true', default=False,
                        help='Skip the interactive confirmation.')
        sp.add_argument('--verify-isolation', action='store_true', default=False,
                        help='Fail if the state record of any other environment '
                             'changed while the command ran.')
        sp.add_argument('--lock-table', default=None,
                        help='The DynamoDB table holding the lock that serializes '
                             'mutations of the environment. Defaults to '
                             'TFENVS_LOCK_TABLE.')

    sp = add_parser('check', 'Exit with status 0 if the environment is up to date '
                             'with its configuration, or 2 if changes are pending')
    sp.add_argument('environment', metavar='ENV')

    sp = add_parser('state', 'Summarize the remote state record of an environment')
    sp.add_argument('environment', metavar='ENV')

    sp = add_parser('scaffold', 'Create the files for a new environment')
    sp.add_argument('environment', metavar='ENV')
    sp.add_argument('--from', dest='template', metavar='ENV', default=None,
                    help='An existing environment to copy the parameters from')

    sp = add_parser('unlock', 'Forcibly release a lock left behind by an '
                              'interrupted apply or destroy')
    sp.add_argument('environment', metavar='ENV')
    sp.add_argument('--lock-table', required=True,
                    help='The DynamoDB table holding the lock')

    args = p.parse_args(argv)
    if args.command is None:
        p.error('A command is required')
    return args


def main(argv: Optional[list[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    configure_script_logging(log)
    args = parse_args(argv)
    try:
        return run(args)
    except (RequirementError, subprocess.CalledProcessError) as e:
        print(f'tfenvs: {_one_line(e)}', file=sys.stderr)
        return 1


def run(args: argparse.Namespace) -> int:
    project = Project.from_config(root=args.project_dir,
                                  environments_dir=args.environments_dir,
                                  layout=args.layout)
    command = args.command
    if command == 'list':
        for environment in project.environments():
            locking = {
                True: 'locked',
                False: 'unlocked',
                None: 'native'
            }[environment.backend.has_locking]
            print(environment.name,
                  environment.parameter_file,
                  environment.backend.location,
                  locking,
                  sep='\t')
        return 0
    elif command == 'validate':
        problems = validate(project, args.environments or None)
        for problem in problems:
            print(problem)
        return 1 if errors(problems) else 0
    elif command == 'backend':
        environment = project.environment(args.environment)
        backend = environment.backend.as_config()
        print(json.dumps({k: redact(k, v) for k, v in backend.items()}, indent=4))
        return 0
    elif command == 'unlock':
        environment = project.environment(args.environment)
        holder = StateLock.force_release(args.lock_table, environment.backend)
        if holder is None:
            print(f'The state of environment {args.environment!r} was not locked')
        else:
            print(f'Released the lock held by {holder.get("Owner")} since {holder.get("Created")}')
        return 0
    elif command == 'scaffold':
        for path in project.scaffold(args.environment, template=args.template):
            print(path)
        return 0
    else:
        selector = Selector(project, lock_table=getattr(args, 'lock_table', None))
        if command == 'init':
            selector.init(args.environment, reconfigure=args.reconfigure)
            return 0
        elif command == 'plan':
            summary = selector.plan(args.environment, out=args.out)
            print(summary)
            for action in ('create', 'update', 'replace', 'delete'):
                for address in getattr(summary, action):
                    print(f'{action}\t{address}')
            return 0
        elif command in ('apply', 'destroy'):
            method = getattr(selector, command)
            method(args.environment,
                   auto_approve=args.auto_approve,
                   verify_isolation=args.verify_isolation)
            return 0
        elif command == 'check':
            if selector.converged(args.environment):
                print(f'Environment {args.environment!r} is up to date')
                return 0
            else:
                print(f'Environment {args.environment!r} has pending changes')
                return 2
        elif command == 'state':
            if not project.environment(args.environment).backend.is_s3:
                # Only Terraform itself can read the state of other backends
                for address in selector.resources(args.environment):
                    print(f'resource\t{address}')
                return 0
            record = selector.state(args.environment)
            if record is None:
                print(f'Environment {args.environment!r} has no state record',
                      file=sys.stderr)
                return 1
            else:
                print(f'serial\t{record.serial}')
                print(f'lineage\t{record.lineage}')
                print(f'terraform_version\t{record.terraform_version}')
                for address in record.resources:
                    print(f'resource\t{address}')
                return 0
        else:
            assert False, command


def _one_line(e: Exception) -> str:
    """
    >>> _one_line(RequirementError('Invalid layout', 'spiral'))
    "Invalid layout: 'spiral'"

    >>> _one_line(subprocess.CalledProcessError(1, ['terraform', 'plan']))
    "Command '['terraform', 'plan']' returned non-zero exit status 1."
    """
    message = error_message(e) if isinstance(e, RequirementError) else str(e)
    return ' '.join(message.split())


if __name__ == '__main__':
    sys.exit(main())
