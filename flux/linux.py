"""Linux host operations used by the built-in modules."""
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import sh

from flux.errors import CommandFailed
from flux.utils import backed_up, command_exists, log_action, log_info

logger = logging.getLogger(__name__)

REBOOT_REQUIRED_FILE = Path('/var/run/reboot-required')


def run(command: str, *args: str) -> str:
    """Run a host command, turning sh errors into CommandFailed."""
    logger.debug("Running %s %s", command, " ".join(args))
    try:
        return str(getattr(sh, command.replace('-', '_'))(*args))
    except sh.ErrorReturnCode as e:
        stderr = e.stderr.decode(errors='replace').strip() if e.stderr else ""
        raise CommandFailed(
            f"'{command} {' '.join(args)}' failed: {stderr or 'exit code ' + str(e.exit_code)}",
            command=command,
            exit_code=e.exit_code,
        ) from e
    except sh.CommandNotFound as e:
        raise CommandFailed(f"Command not found: {command}", command=command) from e


def package_manager() -> Optional[str]:
    """Return the system package manager command."""
    for candidate in ('apt-get', 'dnf', 'yum'):
        if command_exists(candidate):
            return candidate
    return None


def package_installed(package: str) -> bool:
    """Check whether a package is installed."""
    try:
        if command_exists('dpkg-query'):
            output = run('dpkg-query', '-W', '-f=${Status}', package)
            return 'install ok installed' in output
        run('rpm', '-q', package)
        return True
    except CommandFailed:
        return False


def install_packages(packages: Iterable[str], dry_run: bool = False) -> List[str]:
    """Install missing packages; returns the packages that were missing."""
    missing = [p for p in packages if not package_installed(p)]
    if not missing:
        log_info("All requested packages are already installed.")
        return []

    if dry_run:
        log_action(f"[DRY RUN] Would install: {' '.join(missing)}")
        return missing

    manager = package_manager()
    if manager is None:
        raise CommandFailed("No supported package manager found")
    log_action(f"Installing: {' '.join(missing)}")
    run(manager, 'install', '-y', *missing)
    return missing


def upgrade_packages(dry_run: bool = False) -> None:
    """Refresh package indexes and upgrade installed packages."""
    manager = package_manager()
    if manager is None:
        raise CommandFailed("No supported package manager found")

    if dry_run:
        log_action(f"[DRY RUN] Would refresh and upgrade packages with {manager}")
        return

    log_action("Refreshing package indexes...")
    if manager == 'apt-get':
        run(manager, 'update')
        run(manager, 'upgrade', '-y')
    else:
        run(manager, 'upgrade', '-y', '--refresh')


def write_file(
    path: Union[str, Path],
    content: str,
    dry_run: bool = False,
    mode: int = 0o644,
    validate: Optional[Callable[[Path], None]] = None,
) -> bool:
    """Write a file if its content differs; returns True when it changed.

    ``validate`` runs after the write; if it raises, the previous file is
    restored.
    """
    path = Path(path)
    if path.exists() and path.read_text() == content:
        log_info(f"{path} is already up to date.")
        return False

    if dry_run:
        log_action(f"[DRY RUN] Would write {path}")
        return True

    log_action(f"Writing {path}...")
    path.parent.mkdir(parents=True, exist_ok=True)
    with backed_up(path):
        path.write_text(content)
        path.chmod(mode)
        if validate is not None:
            validate(path)
    return True


def service_action(action: str, service: str, dry_run: bool = False) -> None:
    """Run a systemctl action on a service."""
    if dry_run:
        log_action(f"[DRY RUN] Would {action} {service}")
        return
    log_action(f"{action.capitalize()}ing {service}...")
    run('systemctl', action, service)


def get_hostname() -> str:
    """Get the current static hostname."""
    return run('hostnamectl', '--static').strip()


def set_hostname(hostname: str, dry_run: bool = False) -> bool:
    """Set the static hostname if it differs."""
    if get_hostname() == hostname:
        log_info(f"Hostname is already {hostname}.")
        return False
    if dry_run:
        log_action(f"[DRY RUN] Would set hostname to {hostname}")
        return True
    log_action(f"Setting hostname to {hostname}...")
    run('hostnamectl', 'set-hostname', hostname)
    return True


def get_timezone() -> str:
    """Get the configured timezone."""
    return run('timedatectl', 'show', '--property=Timezone', '--value').strip()


def set_timezone(timezone: str, dry_run: bool = False) -> bool:
    """Set the timezone if it differs."""
    if get_timezone() == timezone:
        log_info(f"Timezone is already {timezone}.")
        return False
    if dry_run:
        log_action(f"[DRY RUN] Would set timezone to {timezone}")
        return True
    log_action(f"Setting timezone to {timezone}...")
    run('timedatectl', 'set-timezone', timezone)
    return True


def user_exists(username: str) -> bool:
    """Check whether a local user exists."""
    try:
        run('id', '-u', username)
        return True
    except CommandFailed:
        return False


def create_user(username: str, groups: Iterable[str], shell: str, dry_run: bool = False) -> bool:
    """Create a user with the given groups and shell if missing."""
    groups = list(groups)
    if user_exists(username):
        log_info(f"User {username} already exists.")
        if groups and not dry_run:
            run('usermod', '-aG', ','.join(groups), username)
        return False
    if dry_run:
        log_action(f"[DRY RUN] Would create user {username}")
        return True
    log_action(f"Creating user {username}...")
    args = ['-m', '-s', shell]
    if groups:
        args += ['-G', ','.join(groups)]
    run('useradd', *args, username)
    return True


def install_authorized_keys(username: str, keys: Iterable[str], dry_run: bool = False) -> bool:
    """Append missing public keys to a user's authorized_keys."""
    keys = [k.strip() for k in keys if k.strip()]
    if not keys:
        return False
    home = Path(run('getent', 'passwd', username).strip().split(':')[5])
    auth_file = home / '.ssh' / 'authorized_keys'
    existing = auth_file.read_text().splitlines() if auth_file.exists() else []
    new_keys = [k for k in keys if k not in existing]
    if not new_keys:
        log_info(f"SSH keys for {username} are already installed.")
        return False
    changed = write_file(auth_file, "\n".join(existing + new_keys) + "\n", dry_run=dry_run, mode=0o600)
    if changed and not dry_run:
        auth_file.parent.chmod(0o700)
        run('chown', '-R', f"{username}:{username}", str(auth_file.parent))
    return changed


def ufw_status() -> str:
    """Get verbose ufw status output."""
    return run('ufw', 'status', 'verbose')


def ufw_apply(rules: Iterable[str], defaults: dict, dry_run: bool = False) -> None:
    """Apply default policies and allow/limit rules, then enable ufw."""
    if dry_run:
        for direction, policy in defaults.items():
            log_action(f"[DRY RUN] Would set default {direction} policy to {policy}")
        for rule in rules:
            log_action(f"[DRY RUN] Would add rule: ufw {rule}")
        log_action("[DRY RUN] Would enable ufw")
        return

    for direction, policy in defaults.items():
        run('ufw', 'default', policy, direction)
    for rule in rules:
        log_action(f"Adding rule: ufw {rule}")
        run('ufw', *rule.split())
    if 'Status: active' not in ufw_status():
        log_action("Enabling ufw...")
        run('ufw', '--force', 'enable')


def reload_sysctl(dry_run: bool = False) -> None:
    """Reload kernel parameters from all sysctl configuration files."""
    if dry_run:
        log_action("[DRY RUN] Would reload sysctl settings")
        return
    log_action("Reloading sysctl settings...")
    run('sysctl', '--system')


def validate_sshd_config(path: Union[str, Path]) -> None:
    """Check an sshd configuration with sshd -t."""
    run('sshd', '-t', '-f', str(path))


def update_ca_certificates(dry_run: bool = False) -> None:
    """Rebuild the system CA bundle."""
    if dry_run:
        log_action("[DRY RUN] Would update CA certificates")
        return
    run('update-ca-certificates')


def request_certificate(domains: Iterable[str], email: str, webroot: str, dry_run: bool = False) -> None:
    """Obtain or renew a Let's Encrypt certificate with certbot."""
    domains = list(domains)
    args = ['certonly', '--non-interactive', '--agree-tos', '--keep-until-expiring',
            '-m', email, '--webroot', '-w', webroot]
    for domain in domains:
        args += ['-d', domain]
    if dry_run:
        log_action(f"[DRY RUN] Would request certificate for {', '.join(domains)}")
        return
    log_action(f"Requesting certificate for {', '.join(domains)}...")
    run('certbot', *args)


def get_login_shell(username: str) -> str:
    """Get a user's login shell."""
    return run('getent', 'passwd', username).strip().split(':')[-1]


def set_login_shell(username: str, shell: str, dry_run: bool = False) -> bool:
    """Change a user's login shell if it differs."""
    if get_login_shell(username) == shell:
        log_info(f"{username} already uses {shell}.")
        return False
    if dry_run:
        log_action(f"[DRY RUN] Would set shell for {username} to {shell}")
        return True
    log_action(f"Setting shell for {username} to {shell}...")
    run('chsh', '-s', shell, username)
    return True


def reboot_required() -> bool:
    """Check whether installed updates need a reboot to take effect."""
    if REBOOT_REQUIRED_FILE.exists():
        return True
    if command_exists('needs-restarting'):
        try:
            run('needs-restarting', '-r')
        except CommandFailed as e:
            return e.exit_code == 1
    return False


def reboot() -> None:
    """Reboot the host."""
    log_action("Rebooting system...")
    run('systemctl', 'reboot')
