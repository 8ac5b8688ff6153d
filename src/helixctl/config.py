"""Configuration loader for helixctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/helixctl/config.yml`` (or an override path).
3. The container environment variables documented for the image
   (``SDP_INSTANCE``, ``P4_PASSWD``, ``P4_SSL_PREFIX``, ``BACKUP_DESTINATION``...).
4. Environment variables prefixed with ``HELIXCTL_``.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Prefixed environment keys use double underscores to express nesting, e.g.::

    export HELIXCTL_SERVER__SHUTDOWN_TIMEOUT=30
    export HELIXCTL_BACKUPS__SAFE_MODE=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally, except for keys that must stay verbatim strings (passwords,
the SSL prefix, the instance identifier). The resulting configuration is
exposed as immutable ``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load helixctl configuration. Install with "
        "`pip install helixctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "HELIXCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Container-level variables understood for compatibility with the image's
# documented environment. Each maps onto a configuration path.
CONTAINER_ENV_ALIASES: dict[str, tuple[str, ...]] = {
    "SDP_INSTANCE": ("instance",),
    "P4_PASSWD": ("admin_password",),
    "UNICODE_SERVER": ("server", "unicode"),
    "P4_MASTER_HOST": ("server", "master_host"),
    "P4_DOMAIN": ("server", "domain"),
    "P4_SSL_PREFIX": ("server", "ssl_prefix"),
    "P4_PORT": ("server", "port"),
    "SHUTDOWN_TIMEOUT": ("server", "shutdown_timeout"),
    "BACKUP_DESTINATION": ("backups", "destination"),
    "BACKUP_SAFE_MODE": ("backups", "safe_mode"),
    "MONTHLY_SNAPSHOTS": ("backups", "monthly_snapshots"),
}

# Paths whose environment values are never YAML-coerced.
RAW_STRING_PATHS = {
    ("instance",),
    ("admin_password",),
    ("server", "ssl_prefix"),
    ("server", "master_host"),
    ("server", "domain"),
    ("server", "description"),
    ("backups", "destination"),
}

# Paths where an empty environment value means "unset".
EMPTY_MEANS_UNSET = {
    ("admin_password",),
    ("backups", "destination"),
    ("server", "port"),
}

REDACTED = "********"
ALLOWED_SSL_PREFIXES = {"", "ssl:"}
_INSTANCE_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServerConfig:
    """Settings for the managed p4d instance and its lifecycle."""

    port: int = 1666
    ssl_prefix: str = ""
    master_host: str = "127.0.0.1"
    domain: str = "example.com"
    unicode: bool = True
    security_level: int = 3
    description: str = "SDP Perforce Server for Unreal Engine"
    settle_delay: float = 2.0
    ready_timeout: float = 60.0
    shutdown_timeout: float = 20.0
    storage_min: str = "10M"

    @property
    def ssl_enabled(self) -> bool:
        """Return True when the server should listen with an ``ssl:`` prefix."""
        return self.ssl_prefix == "ssl:"

    @property
    def p4port(self) -> str:
        """Return the P4PORT value clients on this host should use."""
        return f"{self.ssl_prefix}{self.port}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "port": self.port,
            "ssl_prefix": self.ssl_prefix,
            "master_host": self.master_host,
            "domain": self.domain,
            "unicode": self.unicode,
            "security_level": self.security_level,
            "description": self.description,
            "settle_delay": self.settle_delay,
            "ready_timeout": self.ready_timeout,
            "shutdown_timeout": self.shutdown_timeout,
            "storage_min": self.storage_min,
        }


@dataclass(frozen=True)
class TLSPermissionSpec:
    """Expected ownership and mode for a TLS-related file."""

    owner: str
    group: str | None
    mode: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "owner": self.owner,
            "group": self.group,
            "mode": f"{self.mode:04o}",
        }


@dataclass(frozen=True)
class TLSValidationConfig:
    """TLS validation expectations (permissions, expiry thresholds)."""

    warn_expiry_days: int = 30
    key_permissions: TLSPermissionSpec = TLSPermissionSpec(
        owner="perforce",
        group="perforce",
        mode=0o600,
    )
    cert_permissions: TLSPermissionSpec = TLSPermissionSpec(
        owner="perforce",
        group="perforce",
        mode=0o644,
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "warn_expiry_days": self.warn_expiry_days,
            "key_permissions": self.key_permissions.to_dict(),
            "cert_permissions": self.cert_permissions.to_dict(),
        }


@dataclass(frozen=True)
class TLSSubjectConfig:
    """Distinguished-name fields used for self-signed certificates."""

    country: str = "US"
    state: str = "State"
    locality: str = "City"
    organization: str = "Organization"
    organizational_unit: str = "IT Department"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "country": self.country,
            "state": self.state,
            "locality": self.locality,
            "organization": self.organization,
            "organizational_unit": self.organizational_unit,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Aggregated TLS configuration values."""

    ssl_dir: Path
    validation: TLSValidationConfig = TLSValidationConfig()
    subject: TLSSubjectConfig = TLSSubjectConfig()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssl_dir": str(self.ssl_dir),
            "validation": self.validation.to_dict(),
            "subject": self.subject.to_dict(),
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup destination, retention and safety settings."""

    destination: Path | None = None
    monthly_snapshots: int = 3
    safe_mode: bool = True
    log_max_age_days: int = 7
    schedule: str = "0 2 * * 0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "destination": str(self.destination) if self.destination is not None else None,
            "monthly_snapshots": self.monthly_snapshots,
            "safe_mode": self.safe_mode,
            "log_max_age_days": self.log_max_age_days,
            "schedule": self.schedule,
        }


@dataclass(frozen=True)
class ProvisioningConfig:
    """Inputs consumed while provisioning a new instance."""

    bundle_dir: Path
    sdp_tarball: str = "sdp.Unix.tgz"
    mkdirs_template: str = "sdp/mkdirs.cfg.j2"
    typemap_file: Path | None = None
    protections_file: Path | None = None
    verify_skip: str = "license,offline_db,p4t_files"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bundle_dir": str(self.bundle_dir),
            "sdp_tarball": self.sdp_tarball,
            "mkdirs_template": self.mkdirs_template,
            "typemap_file": str(self.typemap_file) if self.typemap_file else None,
            "protections_file": str(self.protections_file) if self.protections_file else None,
            "verify_skip": self.verify_skip,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for helixctl."""

    config_file: Path
    instance: str
    p4_base: Path
    depots_root: Path
    logs_root: Path
    metadata_root: Path
    sdp_root: Path
    runtime_dir: Path
    logs_dir: Path
    templates_dir: Path
    service_user: str
    service_group: str
    admin_user: str
    admin_password: str | None
    server: ServerConfig
    tls: TLSConfig
    backups: BackupConfig
    provisioning: ProvisioningConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation with secrets redacted."""
        return {
            "config_file": str(self.config_file),
            "instance": self.instance,
            "p4_base": str(self.p4_base),
            "depots_root": str(self.depots_root),
            "logs_root": str(self.logs_root),
            "metadata_root": str(self.metadata_root),
            "sdp_root": str(self.sdp_root),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "service_user": self.service_user,
            "service_group": self.service_group,
            "admin_user": self.admin_user,
            "admin_password": REDACTED if self.admin_password else None,
            "server": self.server.to_dict(),
            "tls": self.tls.to_dict(),
            "backups": self.backups.to_dict(),
            "provisioning": self.provisioning.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/helixctl/config.yml",
    "instance": "1",
    "p4_base": "/p4",
    "depots_root": "/hxdepots",
    "logs_root": "/hxlogs",
    "metadata_root": "/hxmetadata",
    "sdp_root": None,  # derived from depots_root when absent
    "runtime_dir": "/run/helixctl",
    "logs_dir": "/var/log/helixctl",
    "templates_dir": "/etc/helixctl/templates",
    "service_user": "perforce",
    "service_group": "perforce",
    "admin_user": "perforce",
    "admin_password": None,
    "server": {
        "port": None,  # derived from the instance identifier when absent
        "ssl_prefix": "",
        "master_host": "127.0.0.1",
        "domain": "example.com",
        "unicode": True,
        "security_level": 3,
        "description": "SDP Perforce Server for Unreal Engine",
        "settle_delay": 2.0,
        "ready_timeout": 60.0,
        "shutdown_timeout": 20.0,
        "storage_min": "10M",
    },
    "tls": {
        "ssl_dir": None,  # derived from p4_base when absent
        "validation": {
            "warn_expiry_days": 30,
            "key_permissions": {"owner": None, "group": None, "mode": "0600"},
            "cert_permissions": {"owner": None, "group": None, "mode": "0644"},
        },
        "subject": {
            "country": "US",
            "state": "State",
            "locality": "City",
            "organization": "Organization",
            "organizational_unit": "IT Department",
        },
    },
    "backups": {
        "destination": None,
        "monthly_snapshots": 3,
        "safe_mode": True,
        "log_max_age_days": 7,
        "schedule": "0 2 * * 0",
    },
    "provisioning": {
        "bundle_dir": "/usr/local/bin",
        "sdp_tarball": "sdp.Unix.tgz",
        "mkdirs_template": "sdp/mkdirs.cfg.j2",
        "typemap_file": None,
        "protections_file": None,
        "verify_skip": "license,offline_db,p4t_files",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "server": set(cast(Mapping[str, object], DEFAULTS["server"]).keys()),
    "tls": {"ssl_dir", "validation", "subject"},
    "backups": set(cast(Mapping[str, object], DEFAULTS["backups"]).keys()),
    "provisioning": set(cast(Mapping[str, object], DEFAULTS["provisioning"]).keys()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    alias_values = _build_container_overrides(resolved_env)
    if alias_values:
        _deep_merge(merged, alias_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    tls_map = _as_dict(raw.get("tls"), "tls")
    validation_map = _as_dict(tls_map.get("validation"), "tls.validation")
    unknown_validation = set(validation_map.keys()) - {
        "warn_expiry_days",
        "key_permissions",
        "cert_permissions",
    }
    if unknown_validation:
        joined = ", ".join(sorted(unknown_validation))
        raise ConfigError(f"Unknown TLS validation keys: {joined}.")
    for field in ("key_permissions", "cert_permissions"):
        permission_raw = validation_map.get(field)
        if permission_raw is not None:
            permission_map = _as_dict(permission_raw, f"tls.validation.{field}")
            _validate_tls_permission_mapping(permission_map, f"tls.validation.{field}")

    subject_map = _as_dict(tls_map.get("subject"), "tls.subject")
    unknown_subject = set(subject_map.keys()) - set(TLSSubjectConfig().to_dict().keys())
    if unknown_subject:
        joined = ", ".join(sorted(unknown_subject))
        raise ConfigError(f"Unknown TLS subject keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    instance = _build_instance(raw.get("instance"))
    p4_base = _to_path(raw.get("p4_base"))
    depots_root = _to_path(raw.get("depots_root"))
    logs_root = _to_path(raw.get("logs_root"))
    metadata_root = _to_path(raw.get("metadata_root"))
    sdp_root_value = raw.get("sdp_root")
    sdp_root = _to_path(sdp_root_value) if sdp_root_value else depots_root / "sdp"

    service_user = _expect_name(raw.get("service_user"), "service_user")
    service_group = _expect_name(raw.get("service_group"), "service_group")
    admin_user = _expect_name(raw.get("admin_user"), "admin_user")

    admin_password_raw = raw.get("admin_password")
    admin_password: str | None
    if admin_password_raw is None or admin_password_raw == "":
        admin_password = None
    else:
        admin_password = str(admin_password_raw)

    server = _build_server(_as_dict(raw.get("server"), "server"), instance)
    tls = _build_tls(
        _as_dict(raw.get("tls"), "tls"),
        p4_base=p4_base,
        service_user=service_user,
        service_group=service_group,
    )
    backups = _build_backups(_as_dict(raw.get("backups"), "backups"))
    provisioning = _build_provisioning(_as_dict(raw.get("provisioning"), "provisioning"))

    return AppConfig(
        config_file=config_file,
        instance=instance,
        p4_base=p4_base,
        depots_root=depots_root,
        logs_root=logs_root,
        metadata_root=metadata_root,
        sdp_root=sdp_root,
        runtime_dir=_to_path(raw.get("runtime_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        service_user=service_user,
        service_group=service_group,
        admin_user=admin_user,
        admin_password=admin_password,
        server=server,
        tls=tls,
        backups=backups,
        provisioning=provisioning,
    )


def _build_instance(value: object) -> str:
    if value is None or isinstance(value, bool):
        raise ConfigError("instance must be a positive integer or an alphanumeric token.")
    text = str(value).strip()
    if not text or not _INSTANCE_PATTERN.match(text):
        raise ConfigError(
            f"instance must be a positive integer or an alphanumeric token. Got {value!r}."
        )
    if text.isdigit() and int(text) < 1:
        raise ConfigError("instance must be a positive integer when numeric.")
    return text


def _default_port(instance: str) -> int:
    # Numeric instances follow the SDP convention of "<instance>666".
    if instance.isdigit():
        return int(f"{instance}666")
    return 1666


def _build_server(mapping: Mapping[str, object], instance: str) -> ServerConfig:
    defaults = ServerConfig()
    port = _expect_int(mapping.get("port"), "server.port", default=_default_port(instance))
    if port < 1 or port > 65535:
        raise ConfigError(f"server.port must be between 1 and 65535. Got {port}.")

    ssl_prefix_raw = mapping.get("ssl_prefix")
    ssl_prefix = "" if ssl_prefix_raw is None else str(ssl_prefix_raw).strip()
    if ssl_prefix not in ALLOWED_SSL_PREFIXES:
        raise ConfigError(f"server.ssl_prefix must be empty or 'ssl:'. Got {ssl_prefix!r}.")

    security_level = _expect_int(
        mapping.get("security_level"),
        "server.security_level",
        default=defaults.security_level,
    )
    if security_level < 0 or security_level > 4:
        raise ConfigError("server.security_level must be between 0 and 4.")

    return ServerConfig(
        port=port,
        ssl_prefix=ssl_prefix,
        master_host=str(mapping.get("master_host") or defaults.master_host),
        domain=str(mapping.get("domain") or defaults.domain),
        unicode=_expect_bool(mapping.get("unicode"), "server.unicode", default=defaults.unicode),
        security_level=security_level,
        description=str(mapping.get("description") or defaults.description),
        settle_delay=_expect_non_negative_float(
            mapping.get("settle_delay"), "server.settle_delay", default=defaults.settle_delay
        ),
        ready_timeout=_expect_positive_float(
            mapping.get("ready_timeout"), "server.ready_timeout", default=defaults.ready_timeout
        ),
        shutdown_timeout=_expect_positive_float(
            mapping.get("shutdown_timeout"),
            "server.shutdown_timeout",
            default=defaults.shutdown_timeout,
        ),
        storage_min=str(mapping.get("storage_min") or defaults.storage_min),
    )


def _build_tls(
    mapping: Mapping[str, object],
    *,
    p4_base: Path,
    service_user: str,
    service_group: str,
) -> TLSConfig:
    ssl_dir_value = mapping.get("ssl_dir")
    ssl_dir = _to_path(ssl_dir_value) if ssl_dir_value else p4_base / "ssl"

    validation_mapping = _as_dict(mapping.get("validation"), "tls.validation")
    warn_expiry_days = _expect_int(
        validation_mapping.get("warn_expiry_days"),
        "tls.validation.warn_expiry_days",
        default=30,
    )
    if warn_expiry_days < 0:
        raise ConfigError("tls.validation.warn_expiry_days must be non-negative.")

    key_permissions = _build_tls_permission(
        _as_dict(validation_mapping.get("key_permissions"), "tls.validation.key_permissions"),
        default_owner=service_user,
        default_group=service_group,
        default_mode=0o600,
        context="tls.validation.key_permissions",
    )
    if key_permissions.mode & 0o077:
        raise ConfigError(
            "tls.validation.key_permissions.mode must not grant group or other access."
        )
    cert_permissions = _build_tls_permission(
        _as_dict(validation_mapping.get("cert_permissions"), "tls.validation.cert_permissions"),
        default_owner=service_user,
        default_group=service_group,
        default_mode=0o644,
        context="tls.validation.cert_permissions",
    )

    subject_mapping = _as_dict(mapping.get("subject"), "tls.subject")
    subject_defaults = TLSSubjectConfig()
    subject = TLSSubjectConfig(
        country=str(subject_mapping.get("country") or subject_defaults.country),
        state=str(subject_mapping.get("state") or subject_defaults.state),
        locality=str(subject_mapping.get("locality") or subject_defaults.locality),
        organization=str(subject_mapping.get("organization") or subject_defaults.organization),
        organizational_unit=str(
            subject_mapping.get("organizational_unit") or subject_defaults.organizational_unit
        ),
    )

    return TLSConfig(
        ssl_dir=ssl_dir,
        validation=TLSValidationConfig(
            warn_expiry_days=warn_expiry_days,
            key_permissions=key_permissions,
            cert_permissions=cert_permissions,
        ),
        subject=subject,
    )


def _build_backups(mapping: Mapping[str, object]) -> BackupConfig:
    defaults = BackupConfig()
    destination_value = mapping.get("destination")
    destination = _to_path(destination_value) if destination_value else None
    monthly = _expect_int(
        mapping.get("monthly_snapshots"),
        "backups.monthly_snapshots",
        default=defaults.monthly_snapshots,
    )
    if monthly < 1:
        raise ConfigError("backups.monthly_snapshots must be at least 1.")
    log_age = _expect_int(
        mapping.get("log_max_age_days"),
        "backups.log_max_age_days",
        default=defaults.log_max_age_days,
    )
    if log_age < 0:
        raise ConfigError("backups.log_max_age_days must be non-negative.")
    schedule = str(mapping.get("schedule") or defaults.schedule).strip()
    if len(schedule.split()) != 5:
        raise ConfigError(
            f"backups.schedule must be a five-field cron expression. Got {schedule!r}."
        )
    return BackupConfig(
        destination=destination,
        monthly_snapshots=monthly,
        safe_mode=_expect_bool(mapping.get("safe_mode"), "backups.safe_mode", default=True),
        log_max_age_days=log_age,
        schedule=schedule,
    )


def _build_provisioning(mapping: Mapping[str, object]) -> ProvisioningConfig:
    bundle_dir = _to_path(mapping.get("bundle_dir") or "/usr/local/bin")
    typemap_value = mapping.get("typemap_file")
    protections_value = mapping.get("protections_file")
    return ProvisioningConfig(
        bundle_dir=bundle_dir,
        sdp_tarball=str(mapping.get("sdp_tarball") or "sdp.Unix.tgz"),
        mkdirs_template=str(mapping.get("mkdirs_template") or "sdp/mkdirs.cfg.j2"),
        typemap_file=(
            _to_path(typemap_value) if typemap_value else bundle_dir / "typemap.unreal.cfg"
        ),
        protections_file=(
            _to_path(protections_value) if protections_value else bundle_dir / "p4-protect.cfg"
        ),
        verify_skip=str(mapping.get("verify_skip") or "license,offline_db,p4t_files"),
    )


def _build_container_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, path in CONTAINER_ENV_ALIASES.items():
        if key not in env:
            continue
        value = _env_value(path, env[key])
        if value is _UNSET:
            continue
        _assign_nested(overrides, list(path), value)
    return overrides


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        coerced = _env_value(tuple(path_segments), value)
        if coerced is _UNSET:
            continue
        _assign_nested(overrides, path_segments, coerced)
    return overrides


_UNSET = object()


def _env_value(path: tuple[str, ...], raw: str) -> object:
    if path in EMPTY_MEANS_UNSET and not raw.strip():
        return _UNSET
    if path in RAW_STRING_PATHS:
        return raw if path == ("admin_password",) else raw.strip()
    return _coerce_value(raw)


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _validate_tls_permission_mapping(mapping: Mapping[str, object], context: str) -> None:
    unknown = set(mapping.keys()) - {"owner", "group", "mode"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown keys for {context}: {joined}.")

    owner = mapping.get("owner")
    if owner is not None and not isinstance(owner, str):
        raise ConfigError(f"{context}.owner must be a string when provided.")

    group = mapping.get("group")
    if group is not None and not isinstance(group, str):
        raise ConfigError(f"{context}.group must be a string or null.")

    if "mode" in mapping:
        _parse_permission_mode(mapping["mode"], f"{context}.mode")


def _parse_permission_mode(value: object, label: str) -> int:
    if value is None:
        raise ConfigError(f"{label} must be specified.")
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ConfigError(f"{label} must be an octal integer string.")
        if text.startswith("0o"):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an octal integer string.") from exc
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if mode < 0 or mode > 0o777:
        raise ConfigError(f"{label} must be between 0000 and 0777 inclusive.")
    return mode


def _build_tls_permission(
    mapping: Mapping[str, object],
    *,
    default_owner: str,
    default_group: str | None,
    default_mode: int,
    context: str,
) -> TLSPermissionSpec:
    owner_value = mapping.get("owner")
    if owner_value is None:
        owner = default_owner
    elif isinstance(owner_value, str):
        owner = owner_value.strip()
        if not owner:
            raise ConfigError(f"{context}.owner must be a non-empty string.")
    else:
        raise ConfigError(f"{context}.owner must be a string.")

    group_value = mapping.get("group")
    if group_value is None:
        group: str | None = default_group
    elif isinstance(group_value, str):
        group = group_value or None
    else:
        raise ConfigError(f"{context}.group must be a string or null.")

    mode_value = mapping.get("mode", f"{default_mode:04o}")
    mode = _parse_permission_mode(mode_value, f"{context}.mode")

    return TLSPermissionSpec(owner=owner, group=group, mode=mode)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    if isinstance(parsed, (Mapping, list)):
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ConfigError(f"Expected {label} to be a boolean or 0/1. Got {value!r}.")
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off", ""}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_name(value: object, key: str) -> str:
    text = _expect_str(value, key).strip()
    if not text:
        raise ConfigError(f"{key} must be a non-empty string.")
    return text


def _expect_number(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_number(value, label, default=default)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_number(value, label, default=default)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero or greater. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "ProvisioningConfig",
    "ServerConfig",
    "TLSConfig",
    "TLSPermissionSpec",
    "TLSSubjectConfig",
    "TLSValidationConfig",
    "load_config",
]
