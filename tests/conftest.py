"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import grp
import io
import os
import pwd
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from rich.console import Console

from helixctl.commands import CommandResult
from helixctl.config import AppConfig, load_config
from helixctl.layout import InstanceLayout
from helixctl.logging import StructuredLogger


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass(slots=True)
class RecordedCall:
    args: tuple[str, ...]
    as_user: str | None
    input_text: str | None
    env: dict[str, str]
    cwd: Path | None
    timeout: float | None = None


@dataclass(slots=True)
class _Rule:
    tokens: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    action: Callable[[tuple[str, ...]], None] | None


def _token_matches(part: str, token: str) -> bool:
    return part == token or Path(part).name == token


@dataclass
class FakeRunner:
    """Command runner double that records invocations and replays canned results.

    Rules registered later win. A rule matches when every token equals an
    argument (or an argument's basename).
    """

    calls: list[RecordedCall] = field(default_factory=list)
    rules: list[_Rule] = field(default_factory=list)

    def on(
        self,
        *tokens: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        action: Callable[[tuple[str, ...]], None] | None = None,
    ) -> None:
        self.rules.append(_Rule(tokens, returncode, stdout, stderr, action))

    def run(
        self,
        args: Sequence[str | os.PathLike[str]],
        *,
        as_user: str | None = None,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        check: bool = False,
        error_prefix: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        command = tuple(str(part) for part in args)
        self.calls.append(
            RecordedCall(command, as_user, input_text, dict(env or {}), cwd, timeout)
        )
        for rule in reversed(self.rules):
            if all(any(_token_matches(part, tok) for part in command) for tok in rule.tokens):
                if rule.action is not None:
                    rule.action(command)
                return CommandResult(command, rule.returncode, rule.stdout, rule.stderr)
        return CommandResult(command, 0, "", "")

    def find(self, *tokens: str) -> list[RecordedCall]:
        return [
            call
            for call in self.calls
            if all(any(_token_matches(part, tok) for part in call.args) for tok in tokens)
        ]


@dataclass
class KeyPair:
    """PEM-encoded certificate and private key."""

    certificate: bytes
    key: bytes


def make_key_pair(
    *,
    common_name: str = "p4.example.test",
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
) -> KeyPair:
    """Return a freshly signed self-signed RSA key pair."""
    now = datetime.now(UTC)
    valid_from = valid_from or (now - timedelta(days=1))
    valid_to = valid_to or (now + timedelta(days=365))
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_to)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return KeyPair(
        certificate=cert.public_bytes(serialization.Encoding.PEM),
        key=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def current_account() -> tuple[str, str]:
    """Return the (user, group) names of the account running the tests."""
    return pwd.getpwuid(os.geteuid()).pw_name, grp.getgrgid(os.getegid()).gr_name


@pytest.fixture
def app_config(tmp_path: Path, current_account: tuple[str, str]) -> AppConfig:
    """Configuration rooted entirely under ``tmp_path`` and owned by the test user."""
    user, group = current_account
    return load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={
            "p4_base": str(tmp_path / "p4"),
            "depots_root": str(tmp_path / "hxdepots"),
            "logs_root": str(tmp_path / "hxlogs"),
            "metadata_root": str(tmp_path / "hxmetadata"),
            "runtime_dir": str(tmp_path / "run"),
            "logs_dir": str(tmp_path / "log"),
            "templates_dir": str(tmp_path / "templates"),
            "service_user": user,
            "service_group": group,
            "server": {"settle_delay": 0, "ready_timeout": 1, "shutdown_timeout": 1},
            "provisioning": {"bundle_dir": str(tmp_path / "bundle")},
        },
    )


@pytest.fixture
def layout(app_config: AppConfig) -> InstanceLayout:
    return InstanceLayout.from_config(app_config)


@pytest.fixture
def logger(tmp_path: Path) -> StructuredLogger:
    return StructuredLogger(tmp_path / "log", console=Console(file=io.StringIO()))
