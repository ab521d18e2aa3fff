"""Click CLI entry point for dbdump."""

import sys

import click

from dbdump import configure_logging
from dbdump.config import ConfigurationError, Engine, build_config


ENV_PREFIX = 'DBDUMP'


def _backup_options(func):
    """Options shared by every command that performs a backup."""
    options = [
        click.option('--engine', '-e', required=True, envvar=f'{ENV_PREFIX}_ENGINE',
                     type=click.Choice([e.value for e in Engine], case_sensitive=False),
                     help='Database engine'),
        click.option('--ssh-login', '-l', envvar=f'{ENV_PREFIX}_SSH_LOGIN',
                     help='Remote SSH login'),
        click.option('--ssh-host', '-H', envvar=f'{ENV_PREFIX}_SSH_HOST',
                     help='Remote SSH host'),
        click.option('--ssh-port', '-p', envvar=f'{ENV_PREFIX}_SSH_PORT',
                     help='Remote SSH port (default 22)'),
        click.option('--identity', '-i', envvar=f'{ENV_PREFIX}_IDENTITY',
                     help='Private key file for SSH authentication'),
        click.option('--db-host', envvar=f'{ENV_PREFIX}_DB_HOST', default='localhost', show_default=True,
                     help='Database host, as seen from the remote host'),
        click.option('--db-user', envvar=f'{ENV_PREFIX}_DB_USER',
                     help='Database user'),
        click.option('--db-password', envvar=f'{ENV_PREFIX}_DB_PASSWORD',
                     help='Database password (never passed on the remote command line)'),
        click.option('--backup-dir', '-d', envvar=f'{ENV_PREFIX}_BACKUP_DIR',
                     help='Local base directory for backups'),
        click.option('--time-subdir', is_flag=True, envvar=f'{ENV_PREFIX}_TIME_SUBDIR',
                     help='Store backups in an additional HH:MM subdirectory'),
        click.option('--retention-days', '-r', envvar=f'{ENV_PREFIX}_RETENTION_DAYS', default='30', show_default=True,
                     help='Delete backup directories older than this many days'),
        click.option('--bzip2', is_flag=True, envvar=f'{ENV_PREFIX}_BZIP2',
                     help='Compress dumps with bzip2'),
        click.option('--xz', is_flag=True, envvar=f'{ENV_PREFIX}_XZ',
                     help='Compress dumps with xz'),
        click.option('--combined', is_flag=True, envvar=f'{ENV_PREFIX}_COMBINED',
                     help='Dump all databases into a single file'),
        click.option('--database', envvar=f'{ENV_PREFIX}_DATABASE',
                     help='Dump only this database'),
        click.option('--ignore-system-schemas/--keep-system-schemas', default=True,
                     envvar=f'{ENV_PREFIX}_IGNORE_SYSTEM_SCHEMAS',
                     help='Skip engine system schemas when listing databases'),
        click.option('--max-packet-size', envvar=f'{ENV_PREFIX}_MAX_PACKET_SIZE',
                     help='mysqldump max_allowed_packet (e.g. 512M)'),
    ]

    for option in reversed(options):
        func = option(func)
    return func


def _config_from_options(options: dict):
    """Build the run configuration, exiting with status 1 on invalid settings."""
    try:
        return build_config(
            engine=options['engine'],
            ssh_host=options['ssh_host'],
            ssh_login=options['ssh_login'],
            identity_file=options['identity'],
            backup_dir=options['backup_dir'],
            ssh_port=options['ssh_port'],
            db_host=options['db_host'],
            db_user=options['db_user'],
            db_password=options['db_password'],
            retention_days=options['retention_days'],
            time_subdir=options['time_subdir'],
            bzip2=options['bzip2'],
            xz=options['xz'],
            combined=options['combined'],
            database=options['database'],
            ignore_system_schemas=options['ignore_system_schemas'],
            max_packet_size=options['max_packet_size'],
        )
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging')
@click.option('--log-file', envvar=f'{ENV_PREFIX}_LOG_FILE', help='Also write logs to this file (rotated)')
@click.version_option(package_name='dbdump')
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_file) -> None:
    """dbdump - database backups over SSH."""
    ctx.ensure_object(dict)
    configure_logging(verbose=verbose, log_file=log_file)


@cli.command()
@_backup_options
def run(**options) -> None:
    """Run one backup now and exit with its status."""
    from dbdump.backup.executor import run_backup

    config = _config_from_options(options)
    outcome = run_backup(config)

    for target in outcome.failed:
        click.echo(f"FAILED {target.target.label}: {target.error_message}", err=True)

    sys.exit(outcome.exit_code)


@cli.command()
@click.option('--cron', required=True, envvar=f'{ENV_PREFIX}_CRON',
              help="Crontab expression in UTC, e.g. '0 2 * * *'")
@_backup_options
def schedule(cron: str, **options) -> None:
    """Run backups on a cron schedule until interrupted."""
    from dbdump.scheduler import run_scheduler

    config = _config_from_options(options)
    try:
        run_scheduler(config, cron)
    except ValueError as e:
        click.echo(f"Configuration error: invalid cron expression '{cron}': {e}", err=True)
        sys.exit(1)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
