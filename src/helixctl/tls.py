"""TLS material provisioning and validation for the p4d SSL directory.

p4d reads ``certificate.txt`` and ``privatekey.txt`` from ``P4SSLDIR``. The
provisioner either adopts operator-supplied files (normalising ownership and
modes) or has p4d generate a self-signed pair from a rendered ``config.txt``.
Either way the result is re-validated and its SHA-256 fingerprint reported.
"""
from __future__ import annotations

import grp
import os
import pwd
import shutil
import stat
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from .config import ServerConfig, TLSConfig, TLSPermissionSpec, TLSValidationConfig
from .logging import OperationScope
from .process import ProcessController, ServerState
from .providers.p4d import P4dError, P4dProvider
from .templates import TemplateEngine, TemplateError

CERTIFICATE_NAME = "certificate.txt"
PRIVATE_KEY_NAME = "privatekey.txt"
REQUEST_CONFIG_NAME = "config.txt"


class TLSProvisioningError(RuntimeError):
    """Raised when TLS material cannot be provisioned or fails validation."""

    def __init__(self, message: str, report: TLSValidationReport | None = None) -> None:
        super().__init__(message)
        self.report = report


class TLSValidationSeverity(Enum):
    """Validation severities for TLS checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class TLSValidationFinding:
    """Individual validation check outcome."""

    scope: str
    check: str
    severity: TLSValidationSeverity
    message: str
    path: Path | None = None


@dataclass(frozen=True)
class TLSMaterial:
    """Certificate material inside an SSL directory."""

    ssl_dir: Path

    @property
    def certificate(self) -> Path:
        """Return the certificate path."""
        return self.ssl_dir / CERTIFICATE_NAME

    @property
    def key(self) -> Path:
        """Return the private key path."""
        return self.ssl_dir / PRIVATE_KEY_NAME

    @property
    def request_config(self) -> Path:
        """Return the certificate request configuration path."""
        return self.ssl_dir / REQUEST_CONFIG_NAME

    def present(self) -> bool:
        """Return True when both certificate and key exist."""
        return self.certificate.is_file() and self.key.is_file()


@dataclass(frozen=True)
class TLSValidationReport:
    """Aggregate validation results for a TLS material."""

    material: TLSMaterial
    findings: tuple[TLSValidationFinding, ...]
    not_valid_before: datetime | None
    not_valid_after: datetime | None
    fingerprint: str | None = None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is TLSValidationSeverity.ERROR for f in self.findings)

    @property
    def has_warnings(self) -> bool:
        """Return True when the report includes warning findings."""
        return any(f.severity is TLSValidationSeverity.WARNING for f in self.findings)

    @property
    def status(self) -> TLSValidationSeverity:
        """Return the overall status derived from the findings."""
        if self.has_errors:
            return TLSValidationSeverity.ERROR
        if self.has_warnings:
            return TLSValidationSeverity.WARNING
        return TLSValidationSeverity.OK

    def messages(self, severity: TLSValidationSeverity) -> list[str]:
        """Return the formatted messages of findings at *severity*."""
        return [
            f"{finding.scope}:{finding.check} {finding.message}"
            for finding in self.findings
            if finding.severity is severity
        ]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "paths": {
                "certificate": str(self.material.certificate),
                "key": str(self.material.key),
            },
            "status": self.status.value,
            "fingerprint": self.fingerprint,
            "not_valid_before": (
                self.not_valid_before.isoformat() if self.not_valid_before else None
            ),
            "not_valid_after": (
                self.not_valid_after.isoformat() if self.not_valid_after else None
            ),
            "findings": [
                {
                    "scope": finding.scope,
                    "check": finding.check,
                    "severity": finding.severity.value,
                    "message": finding.message,
                    "path": str(finding.path) if finding.path is not None else None,
                }
                for finding in self.findings
            ],
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


class TLSValidator:
    """Perform validation checks on the SSL directory's key pair.

    Any deviation from the expected private-key ownership or mode is an
    error. A certificate mode that differs from the expectation is only a
    warning unless it lets group or other write the file.
    """

    def __init__(self, validation: TLSValidationConfig) -> None:
        self._validation = validation

    def validate(
        self,
        material: TLSMaterial,
        *,
        now: datetime | None = None,
    ) -> TLSValidationReport:
        """Validate *material* and return a structured report."""
        now = now or datetime.now(UTC)
        findings: list[TLSValidationFinding] = []

        cert_exists = self._check_file(material.certificate, "certificate", findings)
        key_exists = self._check_file(material.key, "key", findings)

        if cert_exists:
            self._check_permissions(
                material.certificate,
                "certificate",
                self._validation.cert_permissions,
                findings,
                strict=False,
            )
        if key_exists:
            self._check_permissions(
                material.key,
                "key",
                self._validation.key_permissions,
                findings,
                strict=True,
            )

        cert_obj: x509.Certificate | None = None
        key_obj: PrivateKeyProtocol | None = None
        not_before: datetime | None = None
        not_after: datetime | None = None
        fingerprint: str | None = None

        if cert_exists:
            try:
                cert_obj = _load_certificate(material.certificate)
                fingerprint = _fingerprint(cert_obj)
                findings.append(
                    TLSValidationFinding(
                        scope="certificate",
                        check="parse",
                        severity=TLSValidationSeverity.OK,
                        message=f"Loaded certificate (serial {cert_obj.serial_number})",
                        path=material.certificate,
                    )
                )
            except ValueError as exc:
                findings.append(
                    TLSValidationFinding(
                        scope="certificate",
                        check="parse",
                        severity=TLSValidationSeverity.ERROR,
                        message=f"Failed to parse certificate: {exc}",
                        path=material.certificate,
                    )
                )

        if key_exists:
            try:
                key_obj = _load_private_key(material.key)
                findings.append(
                    TLSValidationFinding(
                        scope="key",
                        check="parse",
                        severity=TLSValidationSeverity.OK,
                        message="Loaded private key.",
                        path=material.key,
                    )
                )
            except (ValueError, TypeError) as exc:
                findings.append(
                    TLSValidationFinding(
                        scope="key",
                        check="parse",
                        severity=TLSValidationSeverity.ERROR,
                        message=f"Failed to parse private key: {exc}",
                        path=material.key,
                    )
                )

        if cert_obj is not None and key_obj is not None:
            matched = _public_keys_match(cert_obj, key_obj)
            findings.append(
                TLSValidationFinding(
                    scope="certificate",
                    check="match",
                    severity=TLSValidationSeverity.OK if matched else TLSValidationSeverity.ERROR,
                    message=(
                        "Certificate and key match."
                        if matched
                        else "Certificate does not match the private key."
                    ),
                    path=material.certificate,
                )
            )

        if cert_obj is not None:
            not_before = cert_obj.not_valid_before_utc
            not_after = cert_obj.not_valid_after_utc
            findings.append(self._expiry_finding(material.certificate, not_after, now))

        return TLSValidationReport(
            material=material,
            findings=tuple(findings),
            not_valid_before=not_before,
            not_valid_after=not_after,
            fingerprint=fingerprint,
        )

    def _expiry_finding(
        self,
        path: Path,
        not_after: datetime,
        now: datetime,
    ) -> TLSValidationFinding:
        if not_after <= now:
            return TLSValidationFinding(
                scope="certificate",
                check="expiry",
                severity=TLSValidationSeverity.ERROR,
                message=f"Certificate expired on {not_after.isoformat()}",
                path=path,
            )
        days_remaining = (not_after - now).days
        if days_remaining <= self._validation.warn_expiry_days:
            return TLSValidationFinding(
                scope="certificate",
                check="expiry",
                severity=TLSValidationSeverity.WARNING,
                message=(
                    "Certificate expires soon "
                    f"({not_after.isoformat()}, {days_remaining} day(s) remaining)"
                ),
                path=path,
            )
        return TLSValidationFinding(
            scope="certificate",
            check="expiry",
            severity=TLSValidationSeverity.OK,
            message=f"Certificate valid until {not_after.isoformat()}",
            path=path,
        )

    def _check_file(
        self,
        path: Path,
        scope: str,
        findings: list[TLSValidationFinding],
    ) -> bool:
        if not path.exists():
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="exists",
                    severity=TLSValidationSeverity.ERROR,
                    message="File does not exist.",
                    path=path,
                )
            )
            return False
        if not path.is_file():
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="type",
                    severity=TLSValidationSeverity.ERROR,
                    message="Path is not a regular file.",
                    path=path,
                )
            )
            return False
        if not os.access(path, os.R_OK):
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="readable",
                    severity=TLSValidationSeverity.ERROR,
                    message="File is not readable by the current user.",
                    path=path,
                )
            )
            return False
        findings.append(
            TLSValidationFinding(
                scope=scope,
                check="exists",
                severity=TLSValidationSeverity.OK,
                message="File present and readable.",
                path=path,
            )
        )
        return True

    def _check_permissions(
        self,
        path: Path,
        scope: str,
        expected: TLSPermissionSpec,
        findings: list[TLSValidationFinding],
        *,
        strict: bool,
    ) -> None:
        info = path.stat()
        actual_mode = stat.S_IMODE(info.st_mode)
        owner_name = _owner_name(info.st_uid)
        group_name = _group_name(info.st_gid)
        owner_group = f"{owner_name}:{group_name}"
        mode_str = f"{actual_mode:04o}"

        owner_ok = owner_name == expected.owner and (
            expected.group is None or group_name == expected.group
        )
        if owner_ok:
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="ownership",
                    severity=TLSValidationSeverity.OK,
                    message=f"Ownership ok ({owner_group})",
                    path=path,
                )
            )
        else:
            mismatch = TLSValidationSeverity.ERROR if strict else TLSValidationSeverity.WARNING
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="ownership",
                    severity=mismatch,
                    message=(
                        f"Owned by {owner_group}, expected "
                        f"{expected.owner}:{expected.group or '-'}."
                    ),
                    path=path,
                )
            )

        if actual_mode == expected.mode:
            findings.append(
                TLSValidationFinding(
                    scope=scope,
                    check="mode",
                    severity=TLSValidationSeverity.OK,
                    message=f"Mode ok ({mode_str})",
                    path=path,
                )
            )
            return

        dangerous = strict or bool(actual_mode & 0o022)
        severity = TLSValidationSeverity.ERROR if dangerous else TLSValidationSeverity.WARNING
        findings.append(
            TLSValidationFinding(
                scope=scope,
                check="mode",
                severity=severity,
                message=f"Mode {mode_str}, expected {expected.mode:04o}.",
                path=path,
            )
        )


@dataclass(slots=True)
class TLSOutcome:
    """Result of :meth:`TLSProvisioner.ensure`."""

    requested: bool
    source: str | None = None
    report: TLSValidationReport | None = None
    restarted: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def fingerprint(self) -> str | None:
        """SHA-256 fingerprint of the validated certificate, when there is one."""
        return self.report.fingerprint if self.report is not None else None


def _default_chown(path: Path, user: str, group: str | None) -> None:
    shutil.chown(path, user=user, group=group)


@dataclass(slots=True)
class TLSProvisioner:
    """Ensure the SSL directory holds a valid, correctly-owned key pair."""

    tls: TLSConfig
    server: ServerConfig
    instance: str
    templates: TemplateEngine
    p4d: P4dProvider
    controller: ProcessController
    chown: Callable[[Path, str, str | None], None] = _default_chown

    @property
    def material(self) -> TLSMaterial:
        """Certificate material in the configured SSL directory."""
        return TLSMaterial(self.tls.ssl_dir)

    def ensure(self, requested: bool, op: OperationScope | None = None) -> TLSOutcome:
        """Provision TLS material when *requested*; otherwise do nothing."""
        outcome = TLSOutcome(requested=requested)
        if not requested:
            _step(op, "tls.skip", "skipped", "TLS not requested")
            return outcome

        material = self.material
        self._prepare_directory(material.ssl_dir)
        _step(op, "tls.directory", "success", material.ssl_dir)

        if material.present():
            if not (os.access(material.certificate, os.R_OK) and os.access(material.key, os.R_OK)):
                raise TLSProvisioningError(
                    f"TLS files in {material.ssl_dir} exist but are not readable."
                )
            outcome.source = "custom"
            _step(op, "tls.source", "info", "using supplied certificate and key")
        else:
            outcome.source = "self-signed"
            outcome.restarted = self._generate(material, op)

        self._normalise(material)
        _step(op, "tls.permissions", "success", "ownership and modes normalised")

        report = TLSValidator(self.tls.validation).validate(material)
        outcome.report = report
        outcome.warnings.extend(report.messages(TLSValidationSeverity.WARNING))
        if report.has_errors:
            errors = report.messages(TLSValidationSeverity.ERROR)
            _step(op, "tls.verify", "error", "; ".join(errors))
            raise TLSProvisioningError("TLS verification failed: " + "; ".join(errors), report)
        _step(op, "tls.verify", "warning" if report.has_warnings else "success", report.fingerprint)
        return outcome

    def _prepare_directory(self, ssl_dir: Path) -> None:
        try:
            ssl_dir.mkdir(parents=True, exist_ok=True)
            ssl_dir.chmod(0o700)
            key_spec = self.tls.validation.key_permissions
            self.chown(ssl_dir, key_spec.owner, key_spec.group)
        except (OSError, LookupError) as exc:
            raise TLSProvisioningError(f"Cannot prepare SSL directory {ssl_dir}: {exc}") from exc

    def _generate(self, material: TLSMaterial, op: OperationScope | None) -> bool:
        context = {
            "instance": self.instance,
            "subject": self.tls.subject,
            "common_name": self.server.master_host or "localhost",
            "domain": self.server.domain,
            "dns_names": _unique([self.server.master_host or "localhost", "localhost"]),
            "ip_addresses": ["127.0.0.1"],
        }
        try:
            self.templates.render_to_path(
                "tls/config.txt.j2", material.request_config, context, mode=0o644
            )
        except (TemplateError, OSError) as exc:
            raise TLSProvisioningError(f"Cannot write {material.request_config}: {exc}") from exc
        _step(op, "tls.request-config", "success", material.request_config)

        was_running = self.controller.status() is ServerState.RUNNING
        if was_running:
            stop = self.controller.stop(self.server.shutdown_timeout, op)
            if not stop.stopped:
                raise TLSProvisioningError(
                    "Server could not be stopped for certificate generation."
                )

        try:
            self.p4d.generate_certificate(material.ssl_dir, check=True)
        except P4dError as exc:
            message = f"Certificate generation failed: {exc}"
            if was_running:
                restart_error = self._restart(op)
                if restart_error is not None:
                    message += f"; server restart also failed: {restart_error}"
            raise TLSProvisioningError(message) from exc
        _step(op, "tls.generate", "success", "self-signed certificate generated")

        if was_running:
            restart_error = self._restart(op)
            if restart_error is not None:
                _step(op, "tls.restart", "error", restart_error)
                raise TLSProvisioningError(
                    f"Server did not restart after certificate generation: {restart_error}"
                )
            _step(op, "tls.restart", "success", None)
        return was_running

    def _restart(self, op: OperationScope | None) -> str | None:
        """Start the server again; return the reason when it did not start."""
        try:
            result = self.controller.start(op)
        except P4dError as exc:
            return str(exc)
        return None if result.ok else result.summary()

    def _normalise(self, material: TLSMaterial) -> None:
        key_spec = self.tls.validation.key_permissions
        cert_spec = self.tls.validation.cert_permissions
        try:
            self.chown(material.key, key_spec.owner, key_spec.group)
            material.key.chmod(key_spec.mode)
            self.chown(material.certificate, cert_spec.owner, cert_spec.group)
            material.certificate.chmod(cert_spec.mode)
            if material.request_config.is_file():
                self.chown(material.request_config, cert_spec.owner, cert_spec.group)
                material.request_config.chmod(0o644)
            material.ssl_dir.chmod(0o700)
        except (OSError, LookupError) as exc:
            raise TLSProvisioningError(f"Cannot normalise TLS file permissions: {exc}") from exc


def certificate_fingerprint(path: Path) -> str:
    """Return the SHA-256 fingerprint of the certificate at *path*."""
    try:
        certificate = _load_certificate(path)
    except (OSError, ValueError) as exc:
        raise TLSProvisioningError(f"Cannot read certificate {path}: {exc}") from exc
    return _fingerprint(certificate)


def _fingerprint(certificate: x509.Certificate) -> str:
    digest = certificate.fingerprint(hashes.SHA256())
    return ":".join(f"{byte:02X}" for byte in digest)


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(value for value in values if value))


def _step(op: OperationScope | None, step: str, status: str, detail: object) -> None:
    if op is not None:
        op.add_step(step, status=status, detail=detail)


def _owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = [
    "TLSMaterial",
    "TLSOutcome",
    "TLSProvisioner",
    "TLSProvisioningError",
    "TLSValidationFinding",
    "TLSValidationReport",
    "TLSValidationSeverity",
    "TLSValidator",
    "certificate_fingerprint",
]
