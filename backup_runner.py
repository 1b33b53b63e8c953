#!/usr/bin/env python3
"""
Backup Runner - Dump databases, mirror directories, archive, upload and notify

One run is a fixed sequence of stages. The first failing stage aborts the run,
a failure notification is sent and the process exits 1. The run's working
directory is removed on every exit path; the archive and the log file are the
only things left behind.
"""

import sys
import os
import re
import argparse
import logging
import shutil
import smtplib
import ssl
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path

# Check for required dependencies
REQUIRED_PACKAGES = ['dotenv', 'paramiko', 'requests', 'dateutil']
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

import paramiko
import requests
from dateutil import tz
from dotenv import dotenv_values

# Version
VERSION = "1.0.0"

# Default paths
DEFAULT_ENV_FILE = Path("/etc/backup-runner/backup.env")
ENV_FILE_VAR = "ENV_FILE"

TIMESTAMP_FORMAT = '%Y-%m-%d_%H%M%S'
TIMESTAMP_PATTERN = r'\d{4}-\d{2}-\d{2}_\d{6}'
RFC2822_FORMAT = '%a, %d %b %Y %H:%M:%S %z'
LOG_TAIL_LINES = 200
HTTP_TIMEOUT = 10

REQUIRED_KEYS = ('SERVER_NAME', 'RUN_NAME', 'WORKDIR', 'LOCAL_STORE', 'LOG_DIR')
TRUE_VALUES = ('1', 'on', 'yes', 'true')


class BackupError(Exception):
    """A failure that aborts the backup run"""


class ConfigError(BackupError):
    """Configuration is missing or malformed"""


class PrerequisiteError(BackupError):
    """A required external program is not installed"""


class StageError(BackupError):
    """An external tool failed during a stage"""


@dataclass(frozen=True)
class DatabaseEntry:
    """One database to dump, parsed from a host|port|user|pass|db entry"""
    host: str
    port: int
    user: str
    password: str = field(repr=False)
    database: str

    @classmethod
    def parse(cls, entry, key, index):
        fields = entry.split('|')
        if len(fields) != 5:
            raise ConfigError(
                f"{key} entry #{index}: expected host|port|user|pass|db, got {len(fields)} field(s)"
            )

        host, port, user, password, database = (value.strip() for value in fields)
        if not host or not database:
            raise ConfigError(f"{key} entry #{index}: host and database name are required")
        try:
            port = int(port)
        except ValueError:
            raise ConfigError(f"{key} entry #{index}: port must be a number, got '{port}'") from None

        return cls(host=host, port=port, user=user, password=password, database=database)


def parse_database_entries(value, key):
    """Split a ';'-separated list of database entries; blank entries are ignored"""
    entries = [entry for entry in (value or '').split(';') if entry.strip()]
    return tuple(DatabaseEntry.parse(entry.strip(), key, index)
                 for index, entry in enumerate(entries, start=1))


@dataclass(frozen=True)
class BackupConfig:
    """Backup settings, parsed once from the env file"""
    server_name: str
    run_name: str
    workdir: Path
    local_store: Path
    log_dir: Path
    keep_local: int = 0
    backup_dirs: tuple = ()
    rsync_excludes: tuple = ()
    mysql_dbs: tuple = ()
    postgres_dbs: tuple = ()
    upload_method: str = ''
    notify_channels: tuple = ()
    settings: dict = field(default_factory=dict, repr=False)

    def get(self, key, default=''):
        """Raw setting for transport and channel parameters"""
        value = self.settings.get(key)
        return default if value is None or value == '' else value

    @classmethod
    def from_mapping(cls, values):
        missing = [key for key in REQUIRED_KEYS if not values.get(key)]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")

        keep_local = values.get('KEEP_LOCAL') or '0'
        try:
            keep_local = int(keep_local)
        except ValueError:
            raise ConfigError(f"KEEP_LOCAL must be a number, got '{keep_local}'") from None

        return cls(
            server_name=values['SERVER_NAME'],
            run_name=values['RUN_NAME'],
            workdir=Path(values['WORKDIR']),
            local_store=Path(values['LOCAL_STORE']),
            log_dir=Path(values['LOG_DIR']),
            keep_local=keep_local,
            backup_dirs=tuple(Path(d) for d in (values.get('BACKUP_DIRS') or '').split()),
            rsync_excludes=tuple((values.get('RSYNC_EXCLUDES') or '').split()),
            mysql_dbs=parse_database_entries(values.get('MYSQL_DBS'), 'MYSQL_DBS'),
            postgres_dbs=parse_database_entries(values.get('POSTGRES_DBS'), 'POSTGRES_DBS'),
            upload_method=(values.get('UPLOAD_METHOD') or '').strip(),
            notify_channels=tuple(
                ch.strip() for ch in (values.get('NOTIFY_CHANNELS') or '').split(',') if ch.strip()
            ),
            settings=dict(values),
        )


def load_config(env_file):
    """Load the env file; values it leaves unset fall back to the process environment"""
    env_file = Path(env_file)
    if not env_file.is_file():
        raise ConfigError(f"Missing env file: {env_file}")

    values = dict(os.environ)
    values.update({key: value for key, value in dotenv_values(env_file).items() if value is not None})
    return BackupConfig.from_mapping(values)


def archive_name(run_name, server_name, timestamp):
    return f"{run_name}_{server_name}_{timestamp}.tar.gz"


def safe_name(source):
    """Flatten a source path into a single directory name: /var/www -> var_www"""
    name = str(source).replace('/', '_')
    return name[1:] if name.startswith('_') else name


def stale_archives(store, run_name, server_name, keep):
    """Archives of this run beyond the newest `keep`, newest first"""
    pattern = re.compile(re.escape(f"{run_name}_{server_name}_") + TIMESTAMP_PATTERN + r'\.tar\.gz')
    archives = [path for path in Path(store).iterdir() if path.is_file() and pattern.fullmatch(path.name)]
    archives.sort(key=lambda path: (path.stat().st_mtime, path.name), reverse=True)
    return archives[keep:]


def tail_lines(path, count=LOG_TAIL_LINES):
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return f.read().splitlines()[-count:]


def format_bytes(bytes_val):
    """Format bytes to human readable"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.2f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.2f}PB"


class RunLogFormatter(logging.Formatter):
    """Timestamps in RFC 2822 local time, the way `date -R` prints them"""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, tz.tzlocal()).strftime(datefmt or RFC2822_FORMAT)


def setup_logging(log_file=None):
    """Log to stdout and, when given, to the run's log file"""
    logger = logging.getLogger('backup_runner')
    logger.setLevel(logging.INFO)

    # Open the file first so a bad log path leaves the current handlers in place
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = RunLogFormatter('[%(asctime)s] %(levelname)s: %(message)s')
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


class CommandLog:
    """Run external tools, appending their output to the run log"""

    def __init__(self, log_file):
        self.log_file = log_file

    def run(self, cmd, error, env=None, stdout=None):
        with open(self.log_file, 'ab') as log:
            try:
                result = subprocess.run(
                    cmd,
                    stdout=stdout if stdout is not None else log,
                    stderr=log,
                    env=env
                )
            except FileNotFoundError:
                raise PrerequisiteError(f"{error} ({cmd[0]} not installed)") from None

        if result.returncode != 0:
            raise StageError(f"{error} (exit {result.returncode})")
        return result


# -------- Upload transports --------

class Uploader:
    """Base class for upload transports.

    Subclasses list the settings they need in `required` and, when they shell
    out, the program in `binary`. Both are checked before any transfer starts.
    """
    name = None
    required = ()
    binary = None

    def __init__(self, config, commands, logger):
        self.config = config
        self.commands = commands
        self.logger = logger

    def validate(self):
        missing = [key for key in self.required if not self.config.get(key)]
        if len(missing) == 1:
            raise ConfigError(f"{missing[0]} not set")
        if missing:
            raise ConfigError(f"{self.name} config missing: {', '.join(missing)}")

        if self.binary and shutil.which(self.binary) is None:
            raise PrerequisiteError(f"{self.binary} not installed")

    def upload(self, archive):
        """Validate settings and transfer the archive; returns where it went"""
        self.validate()
        return self.transfer(Path(archive))

    def transfer(self, archive):
        raise NotImplementedError


class LocalMoveUploader(Uploader):
    name = 'local_move'
    required = ('LOCAL_MOVE_DIR',)

    def transfer(self, archive):
        target_dir = Path(self.config.get('LOCAL_MOVE_DIR'))
        self.logger.info(f"Moving archive to: {target_dir}")
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            destination = shutil.move(str(archive), str(target_dir / archive.name))
        except OSError as e:
            raise StageError(f"local_move failed: {e}") from e
        return str(destination)


class S3Uploader(Uploader):
    name = 's3'
    required = ('S3_BUCKET',)
    binary = 'aws'

    def transfer(self, archive):
        destination = f"{self.config.get('S3_BUCKET').rstrip('/')}/{archive.name}"
        env = dict(os.environ)
        if self.config.get('AWS_REGION'):
            env['AWS_REGION'] = self.config.get('AWS_REGION')

        self.logger.info(f"Uploading to S3: {destination}")
        self.commands.run(["aws", "s3", "cp", str(archive), destination], "S3 upload failed", env=env)
        return destination


class FtpUploader(Uploader):
    name = 'ftp'
    required = ('FTP_HOST', 'FTP_USER', 'FTP_PASS')
    binary = 'curl'

    def transfer(self, archive):
        remote_dir = self.config.get('FTP_REMOTE_DIR').strip('/')
        remote_path = f"{remote_dir}/{archive.name}" if remote_dir else archive.name
        destination = f"ftp://{self.config.get('FTP_HOST')}/{remote_path}"
        credentials = f"{self.config.get('FTP_USER')}:{self.config.get('FTP_PASS')}"

        self.logger.info(f"Uploading via FTP: {destination}")
        self.commands.run(["curl", "-fsSL", "--user", credentials, "-T", str(archive), destination],
                          "FTP upload failed")
        return destination


class SshUploader(Uploader):
    """Shared settings for the SSH based transports"""
    required = ('SSH_HOST', 'SSH_USER', 'SSH_KEY')

    @property
    def target(self):
        return f"{self.config.get('SSH_USER')}@{self.config.get('SSH_HOST')}"

    @property
    def port(self):
        port = self.config.get('SSH_PORT').strip()
        if not port:
            return None
        try:
            return int(port)
        except ValueError:
            raise ConfigError(f"SSH_PORT must be a number, got '{port}'") from None

    @property
    def remote_dir(self):
        remote_dir = self.config.get('SSH_REMOTE_DIR').rstrip('/')
        return f"{remote_dir}/" if remote_dir else ""

    def validate(self):
        super().validate()
        if self.port is not None and not 0 < self.port < 65536:
            raise ConfigError(f"SSH_PORT out of range: {self.port}")


class SftpUploader(SshUploader):
    name = 'sftp'

    def transfer(self, archive):
        remote_path = f"{self.remote_dir}{archive.name}"
        self.logger.info(f"Uploading via SFTP to {self.target}:{self.remote_dir}")

        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                self.config.get('SSH_HOST'),
                port=self.port or 22,
                username=self.config.get('SSH_USER'),
                key_filename=self.config.get('SSH_KEY'),
                timeout=10
            )
            sftp = ssh.open_sftp()
            try:
                if self.remote_dir:
                    self.ensure_remote_dir(sftp, self.remote_dir)
                sftp.put(str(archive), remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise StageError(f"SFTP upload failed: {e}") from e
        finally:
            ssh.close()

        return f"{self.target}:{remote_path}"

    @staticmethod
    def ensure_remote_dir(sftp, remote_dir):
        """Create each missing component of the remote directory"""
        current = '/' if remote_dir.startswith('/') else ''
        for part in remote_dir.strip('/').split('/'):
            current = f"{current}{part}"
            try:
                sftp.stat(current)
            except IOError:
                sftp.mkdir(current)
            current += '/'


class ScpUploader(SshUploader):
    name = 'scp'
    binary = 'scp'

    def transfer(self, archive):
        destination = f"{self.target}:{self.remote_dir}"
        cmd = ["scp", "-i", self.config.get('SSH_KEY'), "-oBatchMode=yes"]
        if self.port:
            cmd += ["-P", str(self.port)]
        cmd += [str(archive), destination]

        self.logger.info(f"Uploading via SCP to {destination}")
        self.commands.run(cmd, "SCP upload failed")
        return destination


class RsyncUploader(SshUploader):
    name = 'rsync'
    binary = 'rsync'

    def transfer(self, archive):
        destination = f"{self.target}:{self.remote_dir}"
        ssh_cmd = f"ssh -i {self.config.get('SSH_KEY')} -oBatchMode=yes"
        if self.port:
            ssh_cmd += f" -p {self.port}"

        self.logger.info(f"Uploading via rsync to {destination}")
        self.commands.run(["rsync", "-av", "-e", ssh_cmd, str(archive), destination], "rsync upload failed")
        return destination


class RcloneUploader(Uploader):
    name = 'rclone'
    required = ('RCLONE_REMOTE',)
    binary = 'rclone'

    @property
    def destination(self):
        remote = self.config.get('RCLONE_REMOTE').rstrip('/')
        remote_dir = self.config.get('RCLONE_REMOTE_DIR').strip('/')
        separator = '' if remote.endswith(':') else '/'
        return f"{remote}{separator}{remote_dir}/" if remote_dir else f"{remote}{separator}"

    def transfer(self, archive):
        destination = self.destination
        self.logger.info(f"Uploading via rclone to {destination}")
        self.commands.run(["rclone", "copy", str(archive), destination, "--stats", "30s"], "rclone upload failed")
        return destination


UPLOADERS = {
    uploader.name: uploader
    for uploader in (LocalMoveUploader, S3Uploader, FtpUploader, SftpUploader,
                     ScpUploader, RsyncUploader, RcloneUploader)
}


def get_uploader(config, commands, logger):
    uploader_class = UPLOADERS.get(config.upload_method)
    if uploader_class is None:
        raise ConfigError(f"Unknown UPLOAD_METHOD: {config.upload_method or '<empty>'}")
    return uploader_class(config, commands, logger)


# -------- Notification channels --------

class Channel:
    """Base class for notification channels; unconfigured channels are skipped"""
    name = None
    required = ()

    def __init__(self, config, log_file=None):
        self.config = config
        self.log_file = log_file

    def configured(self):
        return all(self.config.get(key) for key in self.required)

    def send(self, subject, message):
        raise NotImplementedError


class DiscordChannel(Channel):
    name = 'discord'
    required = ('DISCORD_WEBHOOK_URL',)

    def send(self, subject, message):
        response = requests.post(
            self.config.get('DISCORD_WEBHOOK_URL'),
            json={'content': f"{subject} - {message}"},
            timeout=HTTP_TIMEOUT
        )
        response.raise_for_status()


class TelegramChannel(Channel):
    name = 'telegram'
    required = ('TELEGRAM_BOT_TOKEN', 'TELEGRAM_CHAT_ID')

    def send(self, subject, message):
        response = requests.post(
            f"https://api.telegram.org/bot{self.config.get('TELEGRAM_BOT_TOKEN')}/sendMessage",
            data={'chat_id': self.config.get('TELEGRAM_CHAT_ID'), 'text': f"{subject} - {message}"},
            timeout=HTTP_TIMEOUT
        )
        response.raise_for_status()


class SendGridChannel(Channel):
    name = 'sendgrid'
    required = ('SENDGRID_API_KEY', 'SENDGRID_TO', 'SENDGRID_FROM')

    def send(self, subject, message):
        payload = {
            'personalizations': [{'to': [{'email': self.config.get('SENDGRID_TO')}]}],
            'from': {'email': self.config.get('SENDGRID_FROM')},
            'subject': subject,
            'content': [{'type': 'text/plain', 'value': message}],
        }
        response = requests.post(
            "https://api.sendgrid.com/v3/mail/send",
            json=payload,
            headers={'Authorization': f"Bearer {self.config.get('SENDGRID_API_KEY')}"},
            timeout=HTTP_TIMEOUT
        )
        response.raise_for_status()


class EmailChannel(Channel):
    """Plain-text mail through an SMTP relay, with the tail of the run log attached"""
    name = 'email'
    required = ('EMAIL_TO', 'EMAIL_FROM', 'SMTP_HOST')

    def build_message(self, subject, message):
        msg = EmailMessage()
        msg['From'] = formataddr((self.config.get('EMAIL_FROM_NAME', 'Backup'), self.config.get('EMAIL_FROM')))
        msg['To'] = self.config.get('EMAIL_TO')
        msg['Subject'] = subject

        body = message
        if self.log_file and Path(self.log_file).is_file():
            body += "\n\n---- LOG ----\n" + "\n".join(tail_lines(self.log_file))
        msg.set_content(body)
        return msg

    def send(self, subject, message):
        use_tls = self.config.get('SMTP_TLS', 'on').lower() in TRUE_VALUES
        port = int(self.config.get('SMTP_PORT', '587' if use_tls else '25'))
        msg = self.build_message(subject, message)

        if port == 465:
            smtp = smtplib.SMTP_SSL(self.config.get('SMTP_HOST'), port, timeout=30,
                                    context=ssl.create_default_context())
        else:
            smtp = smtplib.SMTP(self.config.get('SMTP_HOST'), port, timeout=30)

        with smtp:
            if use_tls and port != 465:
                smtp.starttls(context=ssl.create_default_context())
            if self.config.get('SMTP_USER'):
                smtp.login(self.config.get('SMTP_USER'), self.config.get('SMTP_PASS'))
            smtp.send_message(msg)


CHANNELS = {
    channel.name: channel
    for channel in (DiscordChannel, TelegramChannel, SendGridChannel, EmailChannel)
}


class Notifier:
    """Handle notifications"""

    def __init__(self, config, logger, log_file=None):
        self.config = config
        self.logger = logger
        self.log_file = log_file

    def send(self, subject, message):
        """Send to every configured channel; failures are logged, never raised"""
        sent = []
        for name in self.config.notify_channels:
            channel_class = CHANNELS.get(name)
            if channel_class is None:
                self.logger.warning(f"Unknown notify channel: {name}")
                continue

            channel = channel_class(self.config, self.log_file)
            if not channel.configured():
                continue

            try:
                channel.send(subject, message)
                sent.append(name)
                self.logger.info(f"Notification sent via {name}: {subject}")
            except Exception as e:
                self.logger.warning(f"Failed to send {name} notification: {str(e)}")
        return sent


# -------- Backup run --------

class BackupRunner:
    """One backup run: dump, sync, archive, upload, retention, notify"""

    def __init__(self, config, now=None):
        self.config = config
        self.started = now or datetime.now(tz.tzlocal())
        self.timestamp = self.started.strftime(TIMESTAMP_FORMAT)
        self.archive_name = archive_name(config.run_name, config.server_name, self.timestamp)
        self.archive_path = config.local_store / self.archive_name
        self.work_run = config.workdir / self.timestamp
        self.log_file = config.log_dir / f"{config.run_name}_{self.timestamp}.log"
        self.commands = CommandLog(self.log_file)
        self.logger = None
        self.notifier = None
        self.destination = None

    def run(self):
        """Run every stage; returns True on success"""
        self.logger = setup_logging()
        self.notifier = Notifier(self.config, self.logger, self.log_file)

        try:
            for directory in (self.config.workdir, self.config.local_store, self.config.log_dir, self.work_run):
                directory.mkdir(parents=True, exist_ok=True)
            setup_logging(self.log_file)

            self.logger.info(f"Starting backup: {self.config.server_name} ({self.config.run_name}) "
                             f"at {self.started.strftime(RFC2822_FORMAT)}")
            self.logger.info(f"Work: {self.work_run}")
            self.logger.info(f"Log:  {self.log_file}")

            self.dump_databases()
            self.sync_directories()
            self.create_archive()
            self.destination = self.upload()
            self.apply_retention()

        except (BackupError, OSError) as e:
            self.logger.error(str(e))
            self.notifier.send(f"Backup FAILED: {self.config.server_name}", str(e))
            return False

        finally:
            shutil.rmtree(self.work_run, ignore_errors=True)

        self.logger.info(f"Backup COMPLETE: {self.archive_name}")
        self.notifier.send(f"Backup OK: {self.config.server_name}", f"Backup completed: {self.archive_name}")
        return True

    def dump_databases(self):
        mysql_dir = self.work_run / 'db' / 'mysql'
        postgres_dir = self.work_run / 'db' / 'postgres'
        mysql_dir.mkdir(parents=True, exist_ok=True)
        postgres_dir.mkdir(parents=True, exist_ok=True)

        if not self.config.mysql_dbs:
            self.logger.info("No MYSQL_DBS configured; skipping MySQL.")
        for entry in self.config.mysql_dbs:
            self.dump_mysql(entry, mysql_dir)

        if not self.config.postgres_dbs:
            self.logger.info("No POSTGRES_DBS configured; skipping Postgres.")
        for entry in self.config.postgres_dbs:
            self.dump_postgres(entry, postgres_dir)

    def dump_mysql(self, entry, target_dir):
        self.logger.info(f"MySQL dump: {entry.database} @ {entry.host}:{entry.port}")
        cmd = [
            "mysqldump", "--single-transaction", "--quick", "--routines", "--triggers",
            "-h", entry.host, "-P", str(entry.port), "-u", entry.user, entry.database
        ]
        with open(target_dir / f"{entry.database}.sql", 'wb') as out:
            self.commands.run(cmd, f"mysqldump failed for db={entry.database}",
                              env={**os.environ, 'MYSQL_PWD': entry.password}, stdout=out)

    def dump_postgres(self, entry, target_dir):
        self.logger.info(f"Postgres dump: {entry.database} @ {entry.host}:{entry.port}")
        cmd = [
            "pg_dump", "-h", entry.host, "-p", str(entry.port), "-U", entry.user, "-d", entry.database,
            "-F", "c", "-f", str(target_dir / f"{entry.database}.dump")
        ]
        self.commands.run(cmd, f"pg_dump failed for db={entry.database}",
                          env={**os.environ, 'PGPASSWORD': entry.password})

    def sync_directories(self):
        """Mirror each source into files/<flattened path>; missing sources are skipped"""
        files_root = self.work_run / 'files'
        files_root.mkdir(parents=True, exist_ok=True)

        exclude_args = []
        for pattern in self.config.rsync_excludes:
            exclude_args += ["--exclude", pattern]

        for source in self.config.backup_dirs:
            if not source.is_dir():
                self.logger.warning(f"missing dir: {source} (skipping)")
                continue

            target = files_root / safe_name(source)
            target.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Rsync: {source} -> {target}")
            self.commands.run(["rsync", "-a", "--delete", *exclude_args, f"{source}/", f"{target}/"],
                              f"rsync failed for {source}")

    def create_archive(self):
        self.logger.info(f"Creating archive: {self.archive_path}")
        self.commands.run(
            ["tar", "-C", str(self.config.workdir), "-czf", str(self.archive_path), self.timestamp],
            "tar failed"
        )
        size = self.archive_path.stat().st_size
        self.logger.info(f"✓ Archive created: {self.archive_name} ({format_bytes(size)})")

    def upload(self):
        uploader = get_uploader(self.config, self.commands, self.logger)
        destination = uploader.upload(self.archive_path)
        self.logger.info(f"✓ Upload complete: {destination}")
        return destination

    def apply_retention(self):
        """Keep the newest KEEP_LOCAL archives of this run name in the local store"""
        keep = self.config.keep_local
        if keep <= 0:
            return []

        self.logger.info(f"Applying local retention: keep {keep} files in {self.config.local_store}")
        removed = []
        for old in stale_archives(self.config.local_store, self.config.run_name, self.config.server_name, keep):
            self.logger.info(f"Deleting old archive: {old}")
            try:
                old.unlink()
                removed.append(old)
            except OSError as e:
                self.logger.warning(f"Could not delete {old}: {e}")
        return removed


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(
        prog='backup-runner',
        description='Backup Runner - Dump databases, mirror directories, archive, upload and notify'
    )
    parser.add_argument('--version', action='version', version=f'Backup Runner {VERSION}')
    parser.add_argument('--env-file', default=os.environ.get(ENV_FILE_VAR, str(DEFAULT_ENV_FILE)),
                        help=f'Path to the env file (default: ${ENV_FILE_VAR} or {DEFAULT_ENV_FILE})')
    parser.add_argument('--test-notify', action='store_true', help='Send a test notification and exit')
    args = parser.parse_args(argv)

    try:
        config = load_config(args.env_file)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if args.test_notify:
        logger = setup_logging()
        sent = Notifier(config, logger).send(
            f"Backup test: {config.server_name}",
            "If you received this, notifications are working!"
        )
        return 0 if sent else 1

    runner = BackupRunner(config)
    return 0 if runner.run() else 1


if __name__ == '__main__':
    sys.exit(main())
