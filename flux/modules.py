"""Built-in module catalog."""
import platform
import re
import shutil
from pathlib import Path
from typing import Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flux import linux
from flux.config import ConfigSlice, ModuleSettings
from flux.errors import ValidationFailed
from flux.registry import Module, ModuleDescriptor, ModuleRegistry
from flux.utils import get_real_user, log_info


LINUX = frozenset({"linux"})
HOSTNAME_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
USERNAME_PATTERN = r"^[a-z_][a-z0-9_-]*$"


# Update

class UpdateSettings(ModuleSettings):
    upgrade: bool = True
    essential_packages: List[str] = Field(default_factory=lambda: [
        "curl", "wget", "git", "vim", "htop", "unzip", "ca-certificates",
        "gnupg", "rsync", "tmux", "jq",
    ])
    include_dev_packages: bool = False
    development_packages: List[str] = Field(default_factory=lambda: [
        "python3", "python3-pip", "python3-venv", "build-essential",
    ])


class UpdateModule(Module):
    descriptor = ModuleDescriptor(
        name="update",
        description="System package updates and essential packages",
        supported_platforms=LINUX,
    )
    settings_model = UpdateSettings

    def is_available(self) -> bool:
        return super().is_available() and linux.package_manager() is not None

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        if settings.upgrade:
            linux.upgrade_packages(dry_run=config.dry_run)
        packages = list(settings.essential_packages)
        if settings.include_dev_packages:
            packages += settings.development_packages
        linux.install_packages(packages, dry_run=config.dry_run)


# Hostname

class HostnameSettings(ModuleSettings):
    set_hostname: str = Field(default="", max_length=253)
    set_fqdn: str = Field(default="", max_length=253)
    update_hosts_file: bool = True

    @field_validator("set_hostname", "set_fqdn")
    @classmethod
    def _valid_hostname(cls, value: str) -> str:
        if value and not re.match(HOSTNAME_PATTERN, value):
            raise ValueError(f"invalid hostname '{value}'")
        return value


class HostnameModule(Module):
    descriptor = ModuleDescriptor(
        name="hostname",
        description="Hostname and FQDN configuration",
        supported_platforms=LINUX,
    )
    settings_model = HostnameSettings
    required_commands = ("hostnamectl",)

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        if not settings.set_hostname:
            log_info("No hostname configured, keeping the current one.")
            return
        linux.set_hostname(settings.set_hostname, dry_run=config.dry_run)
        if settings.update_hosts_file:
            hosts = Path("/etc/hosts")
            linux.write_file(hosts, render_hosts(hosts.read_text(), settings), dry_run=config.dry_run)


def render_hosts(current: str, settings: HostnameSettings) -> str:
    """Point 127.0.1.1 at the configured names, keeping every other line."""
    names = " ".join(n for n in (settings.set_fqdn, settings.set_hostname) if n)
    lines = [line for line in current.splitlines() if not line.startswith("127.0.1.1")]
    lines.append(f"127.0.1.1\t{names}")
    return "\n".join(lines) + "\n"


# Timezone

class TimezoneSettings(ModuleSettings):
    timezone: str = "UTC"


class TimezoneModule(Module):
    descriptor = ModuleDescriptor(
        name="timezone",
        description="Timezone configuration",
        supported_platforms=LINUX,
    )
    settings_model = TimezoneSettings
    required_commands = ("timedatectl",)
    zoneinfo = Path("/usr/share/zoneinfo")

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        timezone = config.settings.timezone
        if not (self.zoneinfo / timezone).is_file():
            raise ValidationFailed(f"Unknown timezone: {timezone}")
        linux.set_timezone(timezone, dry_run=config.dry_run)


# User

class UserSettings(ModuleSettings):
    create_admin_user: bool = True
    admin_username: str = Field(default="fluxadmin", pattern=USERNAME_PATTERN, max_length=32)
    admin_groups: List[str] = Field(default_factory=lambda: ["sudo", "adm", "systemd-journal"])
    admin_shell: str = "/bin/bash"
    authorized_keys: List[str] = Field(default_factory=list)


class UserModule(Module):
    descriptor = ModuleDescriptor(
        name="user",
        description="Administrative user and SSH key management",
        supported_platforms=LINUX,
    )
    settings_model = UserSettings
    required_commands = ("useradd",)

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        if not settings.create_admin_user:
            log_info("Admin user creation disabled.")
            return
        created = linux.create_user(
            settings.admin_username, settings.admin_groups, settings.admin_shell,
            dry_run=config.dry_run,
        )
        # a user created in dry-run mode does not exist yet
        if created and config.dry_run:
            return
        linux.install_authorized_keys(settings.admin_username, settings.authorized_keys, dry_run=config.dry_run)


# SSH

class SshSettings(ModuleSettings):
    port: int = Field(default=22, ge=1, le=65535)
    listen_addresses: List[str] = Field(default_factory=lambda: ["0.0.0.0"])
    disable_root_login: bool = True
    disable_password_auth: bool = True
    max_auth_tries: int = Field(default=3, ge=1, le=20)
    max_sessions: int = Field(default=10, ge=1)
    client_alive_interval: int = Field(default=300, ge=0)
    client_alive_count_max: int = Field(default=3, ge=0)
    allowed_users: List[str] = Field(default_factory=list)
    x11_forwarding: bool = False
    config_path: str = "/etc/ssh/sshd_config.d/99-flux.conf"
    main_config: str = "/etc/ssh/sshd_config"


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def render_sshd_config(settings: SshSettings) -> str:
    """Render the sshd drop-in for the given settings."""
    lines = ["# Managed by flux", f"Port {settings.port}"]
    lines += [f"ListenAddress {address}" for address in settings.listen_addresses]
    lines += [
        f"PermitRootLogin {_yes_no(not settings.disable_root_login)}",
        f"PasswordAuthentication {_yes_no(not settings.disable_password_auth)}",
        "PubkeyAuthentication yes",
        "PermitEmptyPasswords no",
        f"MaxAuthTries {settings.max_auth_tries}",
        f"MaxSessions {settings.max_sessions}",
        f"ClientAliveInterval {settings.client_alive_interval}",
        f"ClientAliveCountMax {settings.client_alive_count_max}",
        f"X11Forwarding {_yes_no(settings.x11_forwarding)}",
    ]
    if settings.allowed_users:
        lines.append(f"AllowUsers {' '.join(settings.allowed_users)}")
    return "\n".join(lines) + "\n"


class SshModule(Module):
    descriptor = ModuleDescriptor(
        name="ssh",
        description="SSH server hardening",
        supported_platforms=LINUX,
    )
    settings_model = SshSettings
    required_commands = ("sshd",)

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        changed = linux.write_file(
            settings.config_path,
            render_sshd_config(settings),
            dry_run=config.dry_run,
            mode=0o600,
            validate=lambda _: linux.validate_sshd_config(settings.main_config),
        )
        if changed:
            linux.service_action("reload", "ssh", dry_run=config.dry_run)


# Firewall

class FirewallRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"
    action: Literal["allow", "deny", "limit"] = "allow"

    @model_validator(mode="before")
    @classmethod
    def _from_text(cls, value):
        # "443" or "443/tcp" from the environment or CLI
        if isinstance(value, (str, int)):
            port, _, protocol = str(value).partition("/")
            return {"port": port, "protocol": protocol or "tcp"}
        return value

    def as_ufw(self) -> str:
        return f"{self.action} {self.port}/{self.protocol}"


Policy = Literal["allow", "deny", "reject"]


class FirewallSettings(ModuleSettings):
    enable_firewall: bool = True
    default_input_policy: Policy = "deny"
    default_output_policy: Policy = "allow"
    allow_ssh: bool = True
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_limit: bool = True
    allow_http: bool = False
    allow_https: bool = False
    rules: List[FirewallRule] = Field(default_factory=list)


def firewall_rules(settings: FirewallSettings) -> List[str]:
    """ufw rule arguments in the order they are applied."""
    rules = []
    if settings.allow_ssh:
        rules.append(f"{'limit' if settings.ssh_limit else 'allow'} {settings.ssh_port}/tcp")
    if settings.allow_http:
        rules.append("allow 80/tcp")
    if settings.allow_https:
        rules.append("allow 443/tcp")
    for rule in settings.rules:
        if rule.as_ufw() not in rules:
            rules.append(rule.as_ufw())
    return rules


class FirewallModule(Module):
    descriptor = ModuleDescriptor(
        name="firewall",
        description="UFW firewall rules",
        supported_platforms=LINUX,
    )
    settings_model = FirewallSettings
    required_commands = ("ufw",)

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        if not settings.enable_firewall:
            log_info("Firewall disabled in configuration.")
            return
        defaults = {
            "incoming": settings.default_input_policy,
            "outgoing": settings.default_output_policy,
        }
        linux.ufw_apply(firewall_rules(settings), defaults, dry_run=config.dry_run)


# Sysctl

class SysctlSettings(ModuleSettings):
    network_hardening: bool = True
    disable_ip_forwarding: bool = True
    ignore_icmp_ping: bool = False
    enable_syn_cookies: bool = True
    restrict_dmesg: bool = True
    hide_kernel_pointers: bool = True
    protected_links: bool = True
    custom: Dict[str, Union[str, int]] = Field(default_factory=dict)
    config_path: str = "/etc/sysctl.d/99-flux.conf"


def sysctl_values(settings: SysctlSettings) -> Dict[str, str]:
    values = {}
    if settings.network_hardening:
        values.update({
            "net.ipv4.conf.all.accept_redirects": "0",
            "net.ipv4.conf.all.send_redirects": "0",
            "net.ipv4.conf.all.accept_source_route": "0",
            "net.ipv4.conf.all.rp_filter": "1",
            "net.ipv4.icmp_ignore_bogus_error_responses": "1",
        })
    if settings.disable_ip_forwarding:
        values["net.ipv4.ip_forward"] = "0"
        values["net.ipv6.conf.all.forwarding"] = "0"
    values["net.ipv4.icmp_echo_ignore_all"] = "1" if settings.ignore_icmp_ping else "0"
    if settings.enable_syn_cookies:
        values["net.ipv4.tcp_syncookies"] = "1"
    if settings.restrict_dmesg:
        values["kernel.dmesg_restrict"] = "1"
    if settings.hide_kernel_pointers:
        values["kernel.kptr_restrict"] = "2"
    if settings.protected_links:
        values["fs.protected_hardlinks"] = "1"
        values["fs.protected_symlinks"] = "1"
    values.update({key: str(value) for key, value in settings.custom.items()})
    return values


def render_sysctl_config(settings: SysctlSettings) -> str:
    lines = ["# Managed by flux"]
    lines += [f"{key} = {value}" for key, value in sysctl_values(settings).items()]
    return "\n".join(lines) + "\n"


class SysctlModule(Module):
    descriptor = ModuleDescriptor(
        name="sysctl",
        description="Kernel parameter hardening",
        supported_platforms=LINUX,
    )
    settings_model = SysctlSettings
    required_commands = ("sysctl",)

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        if linux.write_file(settings.config_path, render_sysctl_config(settings), dry_run=config.dry_run):
            linux.reload_sysctl(dry_run=config.dry_run)


# Certificates

class CertsSettings(ModuleSettings):
    enable_letsencrypt: bool = False
    email: str = ""
    domains: List[str] = Field(default_factory=list)
    webroot: str = "/var/www/html"
    ca_certificates: List[str] = Field(default_factory=list)
    ca_dir: str = "/usr/local/share/ca-certificates"

    @model_validator(mode="after")
    def _letsencrypt_needs_contact(self):
        if self.enable_letsencrypt and not (self.email and self.domains):
            raise ValueError("enable_letsencrypt requires email and at least one domain")
        return self


class CertsModule(Module):
    descriptor = ModuleDescriptor(
        name="certs",
        description="CA certificates and Let's Encrypt",
        supported_platforms=LINUX,
    )
    settings_model = CertsSettings
    required_commands = ("update-ca-certificates",)

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        linux.install_packages(["ca-certificates"], dry_run=config.dry_run)

        changed = False
        for source in settings.ca_certificates:
            source = Path(source)
            if not source.is_file():
                raise ValidationFailed(f"CA certificate not found: {source}")
            target = Path(settings.ca_dir) / f"{source.stem}.crt"
            changed |= linux.write_file(target, source.read_text(), dry_run=config.dry_run)
        if changed:
            linux.update_ca_certificates(dry_run=config.dry_run)

        if settings.enable_letsencrypt:
            linux.install_packages(["certbot"], dry_run=config.dry_run)
            linux.request_certificate(settings.domains, settings.email, settings.webroot, dry_run=config.dry_run)


# Zsh

class ZshSettings(ModuleSettings):
    configure_users: List[str] = Field(default_factory=list)
    set_default_shell: bool = True


class ZshModule(Module):
    descriptor = ModuleDescriptor(
        name="zsh",
        description="Zsh shell installation",
        supported_platforms=LINUX,
    )
    settings_model = ZshSettings

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        linux.install_packages(["zsh"], dry_run=config.dry_run)
        if not settings.set_default_shell:
            return
        shell = shutil.which("zsh") or "/usr/bin/zsh"
        users = settings.configure_users or [get_real_user()]
        for user in users:
            if not user or user == "root":
                log_info("Skipping shell change for root user.")
                continue
            linux.set_login_shell(user, shell, dry_run=config.dry_run)


# MOTD

class MotdSettings(ModuleSettings):
    custom_banner: str = ""
    show_system_info: bool = True
    path: str = "/etc/motd"


def render_motd(settings: MotdSettings) -> str:
    lines = []
    if settings.custom_banner:
        lines += settings.custom_banner.splitlines() + [""]
    if settings.show_system_info:
        lines.append(f"Host: {platform.node()}")
        lines.append(f"System: {platform.system()} {platform.release()} ({platform.machine()})")
    lines.append("This system is managed by flux.")
    return "\n".join(lines) + "\n"


class MotdModule(Module):
    descriptor = ModuleDescriptor(
        name="motd",
        description="Login message of the day",
        supported_platforms=LINUX,
    )
    settings_model = MotdSettings

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        linux.write_file(config.settings.path, render_motd(config.settings), dry_run=config.dry_run)


# Netdata

class NetdataSettings(ModuleSettings):
    install_netdata: bool = True
    web_port: int = Field(default=19999, ge=1, le=65535)
    bind_address: str = "127.0.0.1"
    config_path: str = "/etc/netdata/netdata.conf"


class NetdataModule(Module):
    descriptor = ModuleDescriptor(
        name="netdata",
        description="Netdata monitoring agent",
        supported_platforms=LINUX,
    )
    settings_model = NetdataSettings
    required_commands = ("systemctl",)

    def apply(self, args: List[str], config: ConfigSlice) -> None:
        settings = config.settings
        if not settings.install_netdata:
            log_info("Netdata installation disabled.")
            return
        linux.install_packages(["netdata"], dry_run=config.dry_run)
        content = f"[web]\n    bind to = {settings.bind_address}:{settings.web_port}\n"
        if linux.write_file(settings.config_path, content, dry_run=config.dry_run):
            linux.service_action("restart", "netdata", dry_run=config.dry_run)


BUILTIN_MODULES = (
    UpdateModule,
    HostnameModule,
    TimezoneModule,
    UserModule,
    SshModule,
    FirewallModule,
    SysctlModule,
    CertsModule,
    ZshModule,
    MotdModule,
    NetdataModule,
)


def build_registry() -> ModuleRegistry:
    """Register the built-in modules and freeze the registry."""
    registry = ModuleRegistry()
    for module_class in BUILTIN_MODULES:
        registry.register(module_class())
    return registry.freeze()
