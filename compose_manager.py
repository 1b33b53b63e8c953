#!/usr/bin/env python3
"""
Compose Manager - Discover and manage Docker Compose projects under a root directory

A project is the root itself, or any non-hidden directory one level below it,
that contains compose.yml, compose.yaml, docker-compose.yml or
docker-compose.yaml. Projects holding an .inactive marker file are skipped
unless asked for explicitly.
"""

import sys
import os
import argparse
import logging
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

# Check for required dependencies
REQUIRED_PACKAGES = ['yaml']
missing_packages = []

for package in REQUIRED_PACKAGES:
    try:
        __import__(package)
    except ImportError:
        missing_packages.append(package)

if missing_packages:
    print("ERROR: Missing required Python packages:")
    for pkg in missing_packages:
        print(f"  - {pkg}")
    print("\nInstall with: pip install docker-fleet-tools")
    sys.exit(1)

import yaml

# Version
VERSION = "1.0.0"

# Defaults
DEFAULT_ROOT = Path("/docker")
INACTIVE_MARKER = ".inactive"
CONFIG_ENV_VAR = "COMPOSE_MANAGER_CONFIG"

# Checked in this order, first match wins
COMPOSE_FILENAMES = ("compose.yml", "compose.yaml", "docker-compose.yml", "docker-compose.yaml")

BULK_COMMANDS = ('list', 'status', 'check', 'pull', 'update', 'restart', 'down', 'prune')

SEPARATOR = "-" * 77

logger = logging.getLogger("compose_manager")


class ComposeManagerError(Exception):
    """Fatal error that ends the run with exit status 1"""


@dataclass(frozen=True)
class FleetConfig:
    """Options for one invocation, built once at startup"""
    root: Path = DEFAULT_ROOT
    excludes: tuple = ()
    only: tuple = ()
    include_inactive: bool = False
    only_inactive: bool = False
    dry_run: bool = False
    prune: bool = False
    verbose: bool = False
    inactive_marker: str = INACTIVE_MARKER


@dataclass(frozen=True)
class Project:
    """A compose project found during discovery"""
    name: str
    path: Path
    compose_file: Path
    inactive: bool = False

    @property
    def tag(self):
        return " [inactive]" if self.inactive else ""


class PullCheck(Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up-to-date"
    INCONCLUSIVE = "inconclusive"


CHECK_MESSAGES = {
    PullCheck.UPDATED: "Update found: newer images pulled.",
    PullCheck.UP_TO_DATE: "No updates detected (up-to-date).",
    PullCheck.INCONCLUSIVE: "Pull output was inconclusive (see lines below).",
}

UPDATED_PHRASES = ("downloaded newer image",)
UP_TO_DATE_PHRASES = ("pull complete", "image is up to date", "already exists")
ERROR_PHRASES = ("error",)


def compose_file_for_dir(directory):
    """Return the compose file used for a directory, or None"""
    for filename in COMPOSE_FILENAMES:
        candidate = Path(directory) / filename
        if candidate.is_file():
            return candidate
    return None


def is_inactive(directory, marker=INACTIVE_MARKER):
    return (Path(directory) / marker).is_file()


def discover_projects(root, marker=INACTIVE_MARKER):
    """Find compose projects at the root and one level below it.

    The root comes first when it qualifies; children follow in lexicographic
    order. Hidden directories and symlinks are not visited. An empty result is
    returned as-is; deciding whether that is fatal is up to the caller.
    """
    root = Path(root)
    if not root.is_dir():
        raise ComposeManagerError(f"Root does not exist: {root}")

    children = sorted(
        (child for child in root.iterdir()
         if child.is_dir() and not child.is_symlink() and not child.name.startswith('.')),
        key=lambda child: child.name
    )

    projects = []
    for directory in [root] + children:
        compose_file = compose_file_for_dir(directory)
        if compose_file is None:
            continue
        name = directory.name or directory.resolve().name
        if not name:
            # "/" has no basename to use as a compose project name
            logger.warning(f"Skipping {compose_file}: cannot derive a project name from {directory}")
            continue
        projects.append(Project(
            name=name,
            path=directory,
            compose_file=compose_file,
            inactive=is_inactive(directory, marker)
        ))
    return projects


def find_project(root, name, marker=INACTIVE_MARKER):
    """Resolve a project by folder name, ignoring any filters"""
    for project in discover_projects(root, marker):
        if project.name == name:
            return project
    raise ComposeManagerError(f"Project not found under {root}: {name}")


def skip_reason(project, config, cli_projects=()):
    """Return why a project is filtered out, or None if it is selected"""
    # Inactive selection; --only-inactive wins over --include-inactive
    if config.only_inactive:
        if not project.inactive:
            return "not inactive"
    elif project.inactive and not config.include_inactive:
        return f"marked inactive: {config.inactive_marker}"

    if cli_projects and project.name not in cli_projects:
        return "not in CLI list"

    if config.only and project.name not in config.only:
        return "not in --only list"

    if project.name in config.excludes:
        return "excluded"

    return None


def filter_projects(projects, config, cli_projects=()):
    """Apply the inactive gate, CLI names, --only and --exclude in that order"""
    selected = []
    for project in projects:
        reason = skip_reason(project, config, cli_projects)
        if reason:
            if config.verbose:
                logger.warning(f"Skipping {project.name} ({reason})")
            continue
        selected.append(project)
    return selected


def compose_command(project):
    """Base `docker compose` invocation for a project, or None if it has no compose file"""
    compose_file = compose_file_for_dir(project.path)
    if compose_file is None:
        return None
    return ["docker", "compose", "-f", str(compose_file), "-p", project.name]


def classify_pull_output(output):
    """Best-effort reading of `docker compose pull` output.

    Only a handful of known phrases are recognised. Anything else is reported
    as inconclusive rather than treated as an error.
    """
    text = output.lower()
    if any(phrase in text for phrase in UPDATED_PHRASES):
        return PullCheck.UPDATED
    if any(phrase in text for phrase in UP_TO_DATE_PHRASES):
        return PullCheck.UP_TO_DATE
    return PullCheck.INCONCLUSIVE


def relevant_pull_lines(output):
    """Lines of pull output worth echoing back to the user"""
    phrases = UPDATED_PHRASES + UP_TO_DATE_PHRASES + ERROR_PHRASES
    return [line for line in output.splitlines() if any(p in line.lower() for p in phrases)]


def project_header(title, location):
    print(SEPARATOR)
    print(f"{title}  {location}")
    print(SEPARATOR)


class CommandRunner:
    """Execute external commands, or only print them in dry-run mode"""

    def __init__(self, dry_run=False):
        self.dry_run = dry_run

    def _dry_run(self, cmd):
        print(f"[dry-run] {shlex.join(cmd)}")

    def run(self, cmd, check=True):
        """Run a command with inherited stdout/stderr"""
        if self.dry_run:
            self._dry_run(cmd)
            return None

        result = subprocess.run(cmd)
        if check and result.returncode != 0:
            raise ComposeManagerError(f"Command failed (exit {result.returncode}): {shlex.join(cmd)}")
        return result

    def capture(self, cmd, merge_stderr=False):
        """Run a command and capture its output; failures are left to the caller"""
        if self.dry_run:
            self._dry_run(cmd)
            return None

        return subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.DEVNULL,
            text=True
        )


class ComposeManager:
    """Run bulk compose commands against the selected projects"""

    def __init__(self, config, runner=None):
        self.config = config
        self.runner = runner or CommandRunner(config.dry_run)
        self.logger = logger

    def discover(self):
        return discover_projects(self.config.root, self.config.inactive_marker)

    def select_projects(self, cli_projects=()):
        """Discover and filter; both an empty discovery and an empty selection are fatal"""
        discovered = self.discover()
        if not discovered:
            raise ComposeManagerError(f"No compose projects found under: {self.config.root}")

        selected = filter_projects(discovered, self.config, cli_projects)
        if not selected:
            raise ComposeManagerError(
                "No matching projects after filters. Check names/--root/--exclude/--only or inactive flags."
            )
        return selected

    def _each(self, projects, action=None):
        """Yield (project, compose base command), printing a header for each"""
        for project in projects:
            base = compose_command(project)
            if base is None:
                if self.config.verbose:
                    self.logger.warning(f"Skipping (no compose file): {project.path}")
                continue

            title = f"{action}: {project.name}" if action else project.name
            project_header(f"{title}{project.tag}", project.path)
            yield project, base

    def running_containers(self, base):
        """Container ids for a project; None in dry-run mode"""
        result = self.runner.capture(base + ["ps", "-q"])
        if result is None:
            return None
        if result.returncode != 0:
            return []
        return result.stdout.split()

    def list_projects(self, projects):
        print(f"Compose projects under: {self.config.root}")
        print(f"Inactive marker: {self.config.inactive_marker} (skipped by default)")
        print(SEPARATOR)

        for project, base in self._each(projects):
            ids = self.running_containers(base)
            if ids is None:
                continue
            if not ids:
                print("Not running.")
                continue

            print("Running containers:")
            cmd = ["docker", "ps", "--format", "  - {{.Names}}  ({{.Image}})"]
            for container_id in ids:
                cmd += ["--filter", f"id={container_id}"]
            self.runner.run(cmd, check=False)

    def status(self, projects):
        for project, base in self._each(projects):
            self.runner.run(base + ["ps"])

    def pull(self, projects):
        for project, base in self._each(projects, "Pulling"):
            self.runner.run(base + ["pull"])

    def update(self, projects):
        for project, base in self._each(projects, "Updating"):
            self.runner.run(base + ["pull"])
            self.runner.run(base + ["up", "-d"])

    def restart(self, projects):
        for project, base in self._each(projects, "Restarting"):
            self.runner.run(base + ["restart"])

    def down(self, projects):
        for project, base in self._each(projects, "Stopping"):
            self.runner.run(base + ["down"])

    def check(self, projects):
        """Pull images and report whether anything new arrived; never restarts"""
        print("Checking for image updates (pull + report).")
        print("Note: This downloads newer images if available, but does NOT restart containers.")
        print(SEPARATOR)

        results = {}
        for project, base in self._each(projects, "Checking"):
            result = self.runner.capture(base + ["pull"], merge_stderr=True)
            if result is None:
                continue

            verdict = classify_pull_output(result.stdout)
            results[project.name] = verdict
            print(CHECK_MESSAGES[verdict])
            for line in relevant_pull_lines(result.stdout):
                print(line)

        return results

    def prune(self):
        project_header("Pruning docker resources", "system-wide")
        for resource in ('image', 'network', 'volume'):
            self.runner.run(["docker", resource, "prune", "-f"])

    def execute(self, command, cli_projects=()):
        """Select projects and run one bulk command over them"""
        projects = self.select_projects(cli_projects)

        handlers = {
            'list': self.list_projects,
            'status': self.status,
            'check': self.check,
            'pull': self.pull,
            'update': self.update,
            'restart': self.restart,
            'down': self.down,
            'prune': self.list_projects,
        }
        if command not in handlers:
            raise ComposeManagerError(f"Unknown command: {command}")

        handlers[command](projects)

        if self.config.prune or command == 'prune':
            self.prune()

        print(SEPARATOR)
        print("Done.")

    def inactive_list(self):
        print(f"Inactive projects under: {self.config.root}")
        print(SEPARATOR)

        inactive = [project for project in self.discover() if project.inactive]
        for project in inactive:
            print(f"  - {project.name}  ({project.path})")
        if not inactive:
            print("None marked inactive.")
        return inactive

    def inactive_on(self, name):
        project = find_project(self.config.root, name, self.config.inactive_marker)
        marker = project.path / self.config.inactive_marker

        if self.config.dry_run:
            print(f"[dry-run] would create: {marker}")
            return marker

        marker.touch(exist_ok=True)
        print(f"Marked inactive: {name}  (created {self.config.inactive_marker})")
        return marker

    def inactive_off(self, name):
        project = find_project(self.config.root, name, self.config.inactive_marker)
        marker = project.path / self.config.inactive_marker

        if self.config.dry_run:
            print(f"[dry-run] would remove: {marker}")
            return marker

        if marker.is_file():
            marker.unlink()
            print(f"Marked active: {name}  (removed {self.config.inactive_marker})")
        else:
            print(f"Already active: {name}  (no {self.config.inactive_marker} found)")
        return marker


def load_config_file(path):
    """Load defaults from a YAML file"""
    path = Path(path)
    if not path.is_file():
        raise ComposeManagerError(f"Configuration file not found: {path}")

    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ComposeManagerError(f"Configuration file must contain a mapping: {path}")

    # A key with no value means "not set"
    data = {key: value for key, value in data.items() if value is not None}

    marker = data.get('inactive_marker', INACTIVE_MARKER)
    if not isinstance(marker, str) or not marker:
        raise ComposeManagerError(f"'inactive_marker' in {path} must be a file name")

    for key in ('exclude', 'only'):
        value = data.get(key, [])
        if isinstance(value, str):
            data[key] = [value]
        elif not isinstance(value, list):
            raise ComposeManagerError(f"'{key}' in {path} must be a list of project names")
    return data


def build_config(args):
    """Merge the optional YAML defaults with command-line options"""
    config_path = args.config or os.environ.get(CONFIG_ENV_VAR)
    defaults = load_config_file(config_path) if config_path else {}

    return FleetConfig(
        root=Path(args.root or defaults.get('root') or DEFAULT_ROOT),
        excludes=tuple(str(name) for name in defaults.get('exclude', []) + args.exclude),
        only=tuple(str(name) for name in defaults.get('only', []) + args.only),
        include_inactive=args.include_inactive,
        only_inactive=args.only_inactive,
        dry_run=args.dry_run,
        prune=args.prune,
        verbose=args.verbose,
        inactive_marker=defaults.get('inactive_marker', INACTIVE_MARKER),
    )


class CliParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"ERROR: {message}\n")


EPILOG = """
Notes:
  - A project is any directory (ROOT itself or one level below ROOT) containing:
      compose.yml | compose.yaml | docker-compose.yml | docker-compose.yaml
  - Mark a project inactive by creating:
      <project>/.inactive

Examples:
  compose-manager --root /srv/docker list
  compose-manager --root /srv/docker update sonarr radarr
  compose-manager --root /srv/docker --exclude homeassistant update
  compose-manager --root /srv/docker inactive on stable-diffusion-webui
"""


def build_parser():
    parser = CliParser(
        prog='compose-manager',
        description='Compose Manager - Discover and manage Docker Compose projects',
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--version', action='version', version=f'Compose Manager {VERSION}')
    parser.add_argument('-c', '--config', help=f'YAML file with default options (or ${CONFIG_ENV_VAR})')
    parser.add_argument('-r', '--root', help=f'Root folder containing projects (default: {DEFAULT_ROOT})')
    parser.add_argument('-x', '--exclude', action='append', default=[], metavar='NAME',
                        help='Exclude a project by folder name (repeatable)')
    parser.add_argument('-o', '--only', action='append', default=[], metavar='NAME',
                        help='Only include a project by folder name (repeatable)')
    parser.add_argument('--include-inactive', action='store_true',
                        help='Include projects with the inactive marker (normally skipped)')
    parser.add_argument('--only-inactive', action='store_true',
                        help='Only include projects with the inactive marker')
    parser.add_argument('-n', '--dry-run', action='store_true', help='Show what would be done (no changes)')
    parser.add_argument('-p', '--prune', action='store_true', help='Run prune at the end')
    parser.add_argument('-v', '--verbose', action='store_true', help='More output (shows skip reasons)')

    subparsers = parser.add_subparsers(dest='command', metavar='<command>', required=True)

    command_help = {
        'list': 'List discovered projects and their running containers',
        'status': "Show 'docker compose ps' per project",
        'check': 'Check for image updates (pull + summarized report; no up)',
        'pull': 'Pull images for projects',
        'update': 'Pull + up -d for projects',
        'restart': 'Restart services for projects',
        'down': 'docker compose down for projects',
        'prune': 'Run docker prune (images, networks, volumes)',
    }
    for name in BULK_COMMANDS:
        command_parser = subparsers.add_parser(name, help=command_help[name])
        command_parser.add_argument('projects', nargs='*', metavar='project',
                                    help='Limit the command to these projects')

    inactive_parser = subparsers.add_parser('inactive', help='Manage inactive markers')
    inactive_sub = inactive_parser.add_subparsers(dest='inactive_command', metavar='{list,on,off}', required=True)
    inactive_sub.add_parser('list', help='List projects marked inactive')
    on_parser = inactive_sub.add_parser('on', help='Mark a project inactive')
    on_parser.add_argument('name')
    off_parser = inactive_sub.add_parser('off', help='Mark a project active')
    off_parser.add_argument('name')

    return parser


def main(argv=None):
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s', stream=sys.stderr)

    try:
        if shutil.which('docker') is None:
            raise ComposeManagerError("Missing required command: docker")

        manager = ComposeManager(build_config(args))

        if args.command == 'inactive':
            if args.inactive_command == 'list':
                manager.inactive_list()
            elif args.inactive_command == 'on':
                manager.inactive_on(args.name)
            else:
                manager.inactive_off(args.name)
            return 0

        manager.execute(args.command, tuple(args.projects))

    except ComposeManagerError as e:
        logger.error(str(e))
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
