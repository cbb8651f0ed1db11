#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# netscaler_acme.py — Issue Let's Encrypt certificates via acme.sh (DNS-01) and bind them to NetScaler SSL vservers.
#
# Features:
#  - Two-phase manual DNS-01 issuance through acme.sh (issue, publish TXT, forced renew)
#  - Certificate discovery across acme.sh homes, ECC material preferred over RSA
#  - certkey add-or-update on the appliance (update skips the domain check)
#  - LB / Gateway / Content Switching SSL vserver discovery
#  - Per-vserver binding reconciliation with confirmation before replacing a bound certkey
#  - Install-existing, renew, list-vservers and list-certkeys modes
#  - acme.sh bootstrap download with retry policy
#  - YAML config (-C/--config) merging with CLI arguments
#  - Plain log file with --log FILE and --log-level {standard,debug}, secrets scrubbed
#
# Version: 1.0.0
#
# MIT License

import argparse
import getpass
import json
import os
import re
import shutil
import subprocess
import sys
import tarfile
import tempfile
import uuid
import datetime
from pathlib import Path
from typing import Optional, Tuple, Dict, Any, List, Union, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

# Dependency checking with better error messages
missing_msgs = []

try:
    from cryptography import x509
    from cryptography.hazmat.primitives import serialization
    from cryptography.x509.oid import NameOID
except ImportError as e:
    missing_msgs.append(("[cryptography]", "pip3 install cryptography", "sudo apt-get install python3-cryptography", str(e)))

try:
    import yaml as yml
except ImportError:
    yml = None

try:
    import requests
    from requests.adapters import HTTPAdapter
    from urllib3.util.retry import Retry
except ImportError as e:
    missing_msgs.append(("[requests]", "pip3 install requests", "sudo apt-get install python3-requests", str(e)))

if missing_msgs:
    for pkg, pip_hint, apt_hint, error in missing_msgs:
        print(f"[!] Missing required Python module: {pkg}")
        print(f"    pip:   {pip_hint}")
        print(f"    apt:   {apt_hint}")
        print(f"    error: {error}")
    sys.exit(1)

VERSION = "1.0.0"

DEFAULT_SSL_DIR = "/nsconfig/ssl"
DEFAULT_ACME_HOME = "/var/nsconfig/acme"
ACME_FALLBACK_HOMES = ("/root/.acme.sh", "/var/nsconfig/.acme.sh", "/var/nsconfig/acme")
ACME_TARBALL_URL = "https://github.com/acmesh-official/acme.sh/archive/master.tar.gz"
ACME_MANUAL_DNS_ACK = "--yes-I-know-dns-manual-mode-enough-go-ahead-please"
NSCLI_CANDIDATES = ("/netscaler/nscli", "/var/nsconfig/nscli", "/usr/local/bin/nscli")
NS_MARKERS = ("/nsconfig", "/var/nsconfig")
KEY_LENGTHS = ("2048", "3072", "4096", "8192", "ec-256", "ec-384", "ec-521")
CHAIN_FILENAMES = ("fullchain.cer", "fullchain.pem")

# ---------------------------
# Configuration & Validation
# ---------------------------

class LogLevel(Enum):
    """Supported log levels."""
    STANDARD = "standard"
    DEBUG = "debug"

@dataclass
class Config:
    """Configuration container with validation."""
    host: str = "127.0.0.1"
    user: str = "nsroot"
    password: Optional[str] = None
    nscli: Optional[str] = None
    acme_home: str = DEFAULT_ACME_HOME
    acme_server: str = "letsencrypt"
    key_length: Union[str, int] = "2048"
    ssl_dir: str = DEFAULT_SSL_DIR
    domain: Optional[str] = None
    san: Optional[Union[str, List[str]]] = None
    name: Optional[str] = None
    cert: Optional[str] = None
    key: Optional[str] = None
    bind: Optional[str] = None
    yes: bool = False
    install: bool = False
    renew: bool = False
    list_endpoints: bool = False
    list_certs: bool = False
    install_acme: bool = False
    timeout_connect: int = 5
    timeout_read: int = 60
    log: Optional[str] = None
    log_level: str = "standard"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self):
        """Validate configuration values."""
        if not self.host:
            raise ValueError("Host is required")

        if not self.user:
            raise ValueError("User is required")

        self.key_length = str(self.key_length).strip().lower()
        if self.key_length not in KEY_LENGTHS:
            raise ValueError(f"key_length must be one of {list(KEY_LENGTHS)}, got: {self.key_length}")

        if self.timeout_connect <= 0:
            raise ValueError(f"timeout_connect must be positive, got: {self.timeout_connect}")

        if self.timeout_read <= 0:
            raise ValueError(f"timeout_read must be positive, got: {self.timeout_read}")

        if self.log_level not in [level.value for level in LogLevel]:
            raise ValueError(f"log_level must be one of {[level.value for level in LogLevel]}, got: {self.log_level}")

        # Expand paths
        if self.log:
            self.log = str(Path(self.log).expanduser().resolve())
        if self.cert:
            self.cert = str(Path(self.cert).expanduser().resolve())
        if self.key:
            self.key = str(Path(self.key).expanduser().resolve())
        self.acme_home = str(Path(self.acme_home).expanduser())

    @property
    def mode(self) -> str:
        """Return the selected run mode."""
        for flag in ("install_acme", "list_endpoints", "list_certs", "install", "renew"):
            if getattr(self, flag):
                return flag
        return "issue"

# ---------------------------
# Custom Exceptions
# ---------------------------

class NetScalerAcmeError(Exception):
    """Base exception for NetScalerAcme errors."""
    pass

class ConfigurationError(NetScalerAcmeError):
    """Configuration validation error."""
    pass

class CertificateError(NetScalerAcmeError):
    """Certificate processing error."""
    pass

class CertificateNotFound(CertificateError):
    """No issued material exists for a domain."""

    def __init__(self, domain: str, searched: Sequence[Path] = ()):
        self.domain = domain
        self.searched = [str(p) for p in searched]
        super().__init__(f"No certificate material found for {domain}")

class MissingMaterial(CertificateError):
    """Certificate or key file missing before install."""
    pass

class IssuanceError(NetScalerAcmeError):
    """ACME issuance or acme.sh handling error."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)

class DeviceRejected(NetScalerAcmeError):
    """The appliance refused a configuration change."""

    def __init__(self, action: str, output: str):
        self.action = action
        self.reason = output.strip()
        super().__init__(f"{action} rejected: {self.reason}")

class TransportUnavailable(NetScalerAcmeError):
    """A collaborator process could not be reached."""
    pass

# ---------------------------
# Logging
# ---------------------------

class Logger:
    """Plain file logger with run correlation and secret scrubbing."""

    SCRUB_PATTERNS = [
        # nscli -U host:user:password
        (r"(-U\s+[^:\s]+:[^:\s]+:)\S+", r"\1<REDACTED>"),
        (r"([\"']password[\"']\s*:\s*[\"']).*?([\"'])", r"\1<REDACTED>\2"),
        (r"(password\s*=\s*)\S+", r"\1<REDACTED>"),
        (r"-----BEGIN (?:RSA |EC )?PRIVATE KEY-----.*?-----END (?:RSA |EC )?PRIVATE KEY-----", "<PRIVATE-KEY-REDACTED>"),
        (r"-----BEGIN CERTIFICATE-----[^-]*-----END CERTIFICATE-----", "<CERTIFICATE-REDACTED>"),
    ]

    def __init__(self, path: Optional[str], level: LogLevel, secrets: Iterable[str] = ()):
        self.path = path
        self.level = level
        self.fp = None
        self.operation_id: Optional[str] = None
        self.secrets = [s for s in secrets if s]

        if self.path:
            self._open_log_file()

    def _open_log_file(self):
        """Open log file with proper error handling."""
        try:
            log_path = Path(self.path)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self.fp = open(log_path, "a", encoding="utf-8")
        except OSError as e:
            print(f"[!] Could not open log file '{self.path}': {e}")
            self.fp = None

    def set_operation_id(self, operation_id: str):
        """Set operation ID for correlation."""
        self.operation_id = operation_id

    def add_secret(self, secret: Optional[str]):
        if secret:
            self.secrets.append(secret)

    def _ts(self) -> str:
        return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _scrub(self, s: Union[str, Dict, Any]) -> str:
        """Scrub sensitive information from log messages."""
        if not isinstance(s, str):
            try:
                s = json.dumps(s, default=str)
            except (TypeError, ValueError):
                s = str(s)

        for pattern, replacement in self.SCRUB_PATTERNS:
            s = re.sub(pattern, replacement, s, flags=re.IGNORECASE | re.DOTALL)

        for secret in self.secrets:
            s = s.replace(secret, "<REDACTED>")

        return s

    def _prefix(self) -> str:
        return f"[{self.operation_id[:8]}] " if self.operation_id else ""

    def _format_message(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Format log message with operation correlation."""
        if self.level == LogLevel.DEBUG and context:
            formatted_msg = f"{self._prefix()}{msg} | context={json.dumps(context, default=str)}"
        else:
            formatted_msg = f"{self._prefix()}{msg}"

        return f"{self._ts()} {level.upper()} {self._scrub(formatted_msg)}"

    def _write(self, level: str, msg: str, context: Optional[Dict[str, Any]] = None):
        if not self.fp:
            return

        try:
            self.fp.write(self._format_message(level, msg, context) + "\n")
            self.fp.flush()
        except OSError:
            # Log write failures are ignored
            pass

    def info(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        self._write("info", msg, context)
        if also_stdout:
            print(f"[*] {self._prefix()}{self._scrub(msg)}")

    def warn(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        self._write("warn", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{self._scrub(msg)}")

    def error(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        self._write("error", msg, context)
        if also_stdout:
            print(f"[!] {self._prefix()}{self._scrub(msg)}", file=sys.stderr)

    def debug(self, msg: str, context: Optional[Dict[str, Any]] = None, also_stdout: bool = False):
        if self.level == LogLevel.DEBUG:
            self._write("debug", msg, context)
            if also_stdout:
                print(f"[DEBUG] {self._prefix()}{self._scrub(msg)}")

    def close(self):
        """Close log file."""
        if self.fp:
            self.fp.close()
            self.fp = None

# ---------------------------
# Certificate Processing
# ---------------------------

def derive_credential_name(domain: str) -> str:
    """Default certkey name for a domain: non-alphanumerics become '_'."""
    return re.sub(r"[^A-Za-z0-9]", "_", domain.strip())

class CertificateProcessor:
    """Handle certificate parsing and validation."""

    @staticmethod
    def load_file(path: Union[str, Path]) -> str:
        """Load a PEM file; missing, unreadable or empty files raise MissingMaterial."""
        file_path = Path(path)

        if not file_path.is_file():
            raise MissingMaterial(f"File not found: {path}")

        try:
            content = file_path.read_bytes().decode("utf-8", errors="ignore")
        except OSError as e:
            raise MissingMaterial(f"Failed to read file {path}: {e}") from e

        if not content.strip():
            raise MissingMaterial(f"File is empty: {path}")

        return content

    @staticmethod
    def _split_pem_chain(pem: str) -> List[str]:
        """Split PEM chain into individual certificates."""
        parts = []
        current = []

        for line in pem.splitlines():
            if "BEGIN CERTIFICATE" in line:
                current = [line]
            elif "END CERTIFICATE" in line:
                current.append(line)
                parts.append("\n".join(current) + "\n")
                current = []
            elif current:
                current.append(line)

        return parts

    @staticmethod
    def load_leaf(cert_pem: str) -> "x509.Certificate":
        chunks = CertificateProcessor._split_pem_chain(cert_pem)
        if not chunks:
            raise CertificateError("Invalid certificate format: missing PEM markers")
        try:
            return x509.load_pem_x509_certificate(chunks[0].encode("utf-8"))
        except ValueError as e:
            raise CertificateError(f"Invalid certificate format: {e}") from e

    @staticmethod
    def validate_certificate_format(cert_pem: str) -> None:
        """Validate certificate PEM format."""
        CertificateProcessor.load_leaf(cert_pem)

    @staticmethod
    def validate_private_key_format(key_pem: str) -> None:
        """Validate private key PEM format."""
        key_markers = ["BEGIN PRIVATE KEY", "BEGIN RSA PRIVATE KEY", "BEGIN EC PRIVATE KEY"]

        if not any(marker in key_pem for marker in key_markers):
            raise CertificateError("Invalid private key format: missing PEM markers")

    @staticmethod
    def key_matches_certificate(cert_pem: str, key_pem: str) -> bool:
        """True when the private key belongs to the leaf certificate."""
        cert = CertificateProcessor.load_leaf(cert_pem)
        try:
            key = serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None)
        except (ValueError, TypeError) as e:
            raise CertificateError(f"Invalid private key: {e}") from e

        spki = serialization.PublicFormat.SubjectPublicKeyInfo
        der = serialization.Encoding.DER
        return cert.public_key().public_bytes(der, spki) == key.public_key().public_bytes(der, spki)

    @staticmethod
    def _extract_cn_or_san(cert: "x509.Certificate") -> str:
        """Extract CN or first SAN from certificate."""
        for attr in cert.subject:
            if attr.oid == NameOID.COMMON_NAME:
                return attr.value

        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            dns_names = san.get_values_for_type(x509.DNSName)
            return dns_names[0] if dns_names else "(no CN/SAN)"
        except x509.ExtensionNotFound:
            return "(no CN/SAN)"

    @staticmethod
    def summarize_chain(cert_pem: str) -> str:
        """Generate certificate chain summary."""
        chunks = CertificateProcessor._split_pem_chain(cert_pem)
        lines = ["[*] Certificate chain summary:"]
        now = datetime.datetime.now(datetime.timezone.utc)

        for idx, chunk in enumerate(chunks):
            tag = "[leaf]" if idx == 0 else f"[ca-{idx}]"
            try:
                cert = x509.load_pem_x509_certificate(chunk.encode("utf-8"))
            except ValueError:
                lines.append(f"    [cert-{idx}] <unparsed certificate>")
                continue

            not_after = cert.not_valid_after_utc
            days_left = (not_after - now).days

            if days_left < 0:
                expiry_info = f"EXPIRED {abs(days_left)} days ago"
            elif days_left == 0:
                expiry_info = "EXPIRES TODAY"
            elif days_left <= 30:
                expiry_info = f"expires in {days_left} days"
            else:
                expiry_info = f"expires {not_after.strftime('%Y-%m-%d')} ({days_left} days)"

            lines.append(f"    {tag} {CertificateProcessor._extract_cn_or_san(cert)} - {expiry_info}")

        return "\n".join(lines)

# ---------------------------
# Certificate Store
# ---------------------------

class KeyVariant(Enum):
    RSA = "rsa"
    EC = "ec"

@dataclass
class CertificateMaterial:
    """Issued certificate chain and key read from an acme.sh home."""
    domain: str
    directory: Path
    chain_path: Path
    key_path: Path
    variant: KeyVariant
    chain: bytes = field(repr=False, default=b"")
    key: bytes = field(repr=False, default=b"")

class CertificateStore:
    """Locate acme.sh output for a domain across candidate homes."""

    EC_SUFFIX = "_ecc"

    def __init__(self, roots: Iterable[Union[str, Path]]):
        self.roots: List[Path] = []
        for root in roots:
            path = Path(root)
            if path not in self.roots:
                self.roots.append(path)

    @classmethod
    def for_acme_home(cls, acme_home: Union[str, Path]) -> "CertificateStore":
        return cls([acme_home, *ACME_FALLBACK_HOMES])

    def candidates(self, domain: str) -> List[Tuple[Path, KeyVariant]]:
        """Directories searched for a domain, in preference order."""
        found = []
        for root in self.roots:
            found.append((root / f"{domain}{self.EC_SUFFIX}", KeyVariant.EC))
            found.append((root / domain, KeyVariant.RSA))
        return found

    @staticmethod
    def _non_empty(path: Path) -> bool:
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    def resolve(self, domain: str) -> CertificateMaterial:
        """Return the first directory holding both a non-empty chain and key."""
        domain = (domain or "").strip()
        if not domain:
            raise ValueError("Domain is required")

        candidates = self.candidates(domain)
        for directory, variant in candidates:
            chain_path = next((directory / n for n in CHAIN_FILENAMES if self._non_empty(directory / n)), None)
            key_path = directory / f"{domain}.key"
            if chain_path is None or not self._non_empty(key_path):
                continue

            try:
                chain = chain_path.read_bytes()
                key = key_path.read_bytes()
            except OSError:
                continue

            return CertificateMaterial(
                domain=domain,
                directory=directory,
                chain_path=chain_path,
                key_path=key_path,
                variant=variant,
                chain=chain,
                key=key,
            )

        raise CertificateNotFound(domain, [d for d, _ in candidates])

# ---------------------------
# NetScaler CLI Client
# ---------------------------

@dataclass(frozen=True)
class DeviceSession:
    """Target appliance and credentials for one run."""
    host: str
    user: str
    password: str = field(repr=False)

    @property
    def login(self) -> str:
        return f"{self.host}:{self.user}:{self.password}"

def find_nscli(configured: Optional[str] = None, candidates: Sequence[str] = NSCLI_CANDIDATES) -> str:
    """Locate the nscli executable."""
    if configured:
        if os.access(configured, os.X_OK):
            return configured
        raise TransportUnavailable(f"nscli not executable: {configured}")

    for path in candidates:
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path

    on_path = shutil.which("nscli")
    if on_path:
        return on_path

    raise TransportUnavailable(f"Cannot find nscli (checked {', '.join(candidates)} and PATH)")

@dataclass
class CertKeyInfo:
    name: str
    status: Optional[str] = None
    days_to_expiration: Optional[int] = None

class NSOutputParser:
    """Line-pattern parsing of nscli text output."""

    VSERVER_ROW = re.compile(r"^\s*\d+\)\s+(\S+)")
    SSL_PROTOCOL = re.compile(r"\)\s*-\s*SSL", re.IGNORECASE)
    CERTKEY_NAME = re.compile(r"CertKey Name:\s*(\S+)", re.IGNORECASE)
    CERTKEY_ROW = re.compile(r"^\s*(?:\d+\)\s*)?Name:\s*(\S+)", re.IGNORECASE)
    CERTKEY_STATUS = re.compile(r"Status:\s*([A-Za-z ]+?)\s*(?:,|$)", re.IGNORECASE)
    DAYS_TO_EXPIRY = re.compile(r"Days to expiration:\s*(-?\d+)", re.IGNORECASE)
    ERROR = re.compile(r"error", re.IGNORECASE)
    ALREADY_EXISTS = re.compile(r"already exists", re.IGNORECASE)
    DONE = re.compile(r"\bdone\b", re.IGNORECASE)

    @classmethod
    def vserver_names(cls, output: str, ssl_only: bool) -> List[str]:
        """Names from 'N) name (ip:port) - PROTO' rows."""
        names = []
        for line in output.splitlines():
            match = cls.VSERVER_ROW.match(line)
            if not match:
                continue
            if ssl_only and not cls.SSL_PROTOCOL.search(line):
                continue
            if match.group(1) not in names:
                names.append(match.group(1))
        return names

    @classmethod
    def bound_certkey(cls, output: str) -> Optional[str]:
        """First server certkey listed by 'show ssl vserver'; CA entries are ignored."""
        for line in output.splitlines():
            match = cls.CERTKEY_NAME.search(line)
            if match and "CA Certificate" not in line:
                return match.group(1)
        return None

    @classmethod
    def certkeys(cls, output: str) -> List[CertKeyInfo]:
        """Rows from 'show ssl certkey'."""
        rows: List[CertKeyInfo] = []
        for line in output.splitlines():
            if "CertKey Name" in line:
                continue
            match = cls.CERTKEY_ROW.match(line)
            if match:
                rows.append(CertKeyInfo(name=match.group(1)))
                continue
            if not rows:
                continue
            status = cls.CERTKEY_STATUS.search(line)
            if status and rows[-1].status is None:
                rows[-1].status = status.group(1).strip()
            days = cls.DAYS_TO_EXPIRY.search(line)
            if days:
                rows[-1].days_to_expiration = int(days.group(1))
        return rows

    @classmethod
    def is_error(cls, output: str) -> bool:
        return bool(cls.ERROR.search(output or ""))

    @classmethod
    def already_exists(cls, output: str) -> bool:
        return bool(cls.ALREADY_EXISTS.search(output or ""))

    @classmethod
    def is_done(cls, output: str) -> bool:
        return bool(cls.DONE.search(output or ""))

    @staticmethod
    def is_netscaler(output: str) -> bool:
        return "netscaler" in (output or "").lower()

class NSCli:
    """Runs one nscli command at a time against a DeviceSession."""

    def __init__(self, session: DeviceSession, nscli: str, logger: Logger):
        self.session = session
        self.nscli = nscli
        self.logger = logger
        self.logger.add_secret(session.password)

    def run(self, command: str) -> str:
        """Execute one command and return its combined output."""
        argv = [self.nscli, "-U", self.session.login, command]
        self.logger.debug(f"nscli> {command}")

        try:
            proc = subprocess.run(argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        except OSError as e:
            raise TransportUnavailable(f"Cannot execute {self.nscli}: {e}") from e

        output = proc.stdout or ""
        self.logger.debug(f"nscli< {command} -> rc={proc.returncode}", context={"output": output})
        return output

    def verify_credentials(self) -> str:
        """Run 'show ns version' and make sure the appliance answered."""
        output = self.run("show ns version")
        if not NSOutputParser.is_netscaler(output):
            raise TransportUnavailable(f"Failed to authenticate to {self.session.host}: {output.strip()}")
        return output.strip()

    def show_vservers(self, kind: "EndpointKind") -> str:
        return self.run(ENDPOINT_COMMANDS[kind])

    def show_ssl_vserver(self, name: str) -> str:
        return self.run(f"show ssl vserver {name}")

    def add_certkey(self, name: str, cert: str, key: str) -> str:
        return self.run(f"add ssl certkey {name} -cert {cert} -key {key}")

    def update_certkey(self, name: str, cert: str, key: str) -> str:
        return self.run(f"update ssl certkey {name} -cert {cert} -key {key} -nodomaincheck")

    def unbind_certkey(self, vserver: str, certkey: str) -> str:
        return self.run(f"unbind ssl vserver {vserver} -certkeyname {certkey}")

    def bind_certkey(self, vserver: str, certkey: str) -> str:
        return self.run(f"bind ssl vserver {vserver} -certkeyname {certkey}")

    def show_certkeys(self) -> str:
        return self.run("show ssl certkey")

    def save_config(self) -> str:
        output = self.run("save config")
        if NSOutputParser.is_error(output):
            raise DeviceRejected("save config", output)
        return output

    def list_certkeys(self) -> List[CertKeyInfo]:
        return NSOutputParser.certkeys(self.show_certkeys())

# ---------------------------
# Endpoint Directory
# ---------------------------

class EndpointKind(Enum):
    LOAD_BALANCER = "LB"
    GATEWAY = "Gateway"
    CONTENT_SWITCHING = "CS"

ENDPOINT_COMMANDS = {
    EndpointKind.LOAD_BALANCER: "show lb vserver",
    EndpointKind.GATEWAY: "show vpn vserver",
    EndpointKind.CONTENT_SWITCHING: "show cs vserver",
}

# Gateway vservers always terminate TLS
SSL_FILTERED_KINDS = (EndpointKind.LOAD_BALANCER, EndpointKind.CONTENT_SWITCHING)

@dataclass(frozen=True)
class Endpoint:
    name: str
    kind: EndpointKind

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.name}"

class EndpointDirectory:
    """Discover SSL vservers and their bound certkeys."""

    def __init__(self, cli: NSCli, logger: Logger):
        self.cli = cli
        self.logger = logger

    def list_endpoints(self, kind: EndpointKind) -> List[Endpoint]:
        output = self.cli.show_vservers(kind)
        names = NSOutputParser.vserver_names(output, ssl_only=kind in SSL_FILTERED_KINDS)
        self.logger.debug(f"{kind.value} SSL vservers: {', '.join(names) or 'none'}")
        return [Endpoint(name, kind) for name in names]

    def list_all(self) -> List[Endpoint]:
        endpoints = []
        for kind in EndpointKind:
            endpoints.extend(self.list_endpoints(kind))
        return endpoints

    def current_credential(self, endpoint: Endpoint) -> Optional[str]:
        """Live lookup of the certkey bound to an endpoint."""
        return NSOutputParser.bound_certkey(self.cli.show_ssl_vserver(endpoint.name))

# ---------------------------
# Certificate Installer
# ---------------------------

@dataclass
class InstallResult:
    name: str
    state: str
    cert_path: str
    key_path: str
    output: str = ""

class CertificateInstaller:
    """Stage certificate files and register them as a certkey."""

    def __init__(self, cli: NSCli, ssl_dir: Union[str, Path], logger: Logger):
        self.cli = cli
        self.ssl_dir = Path(ssl_dir)
        self.logger = logger

    @staticmethod
    def _stage(src: Path, dest: Path):
        if dest.exists() and src.resolve() == dest.resolve():
            return
        shutil.copyfile(src, dest)

    @staticmethod
    def _stage_private(src: Path, dest: Path):
        """Copy a private key; the destination is never readable beyond its owner."""
        if dest.exists() and src.resolve() == dest.resolve():
            os.chmod(dest, 0o600)
            return
        data = src.read_bytes()
        fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # O_CREAT mode does not apply to an existing file
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as fp:
            fp.write(data)

    def install(self, name: str, cert_path: Union[str, Path], key_path: Union[str, Path]) -> InstallResult:
        """Copy cert+key into the SSL directory, then add or update the certkey."""
        if not name:
            raise ConfigurationError("Certificate name is required")

        cert_pem = CertificateProcessor.load_file(cert_path)
        key_pem = CertificateProcessor.load_file(key_path)
        CertificateProcessor.validate_certificate_format(cert_pem)
        CertificateProcessor.validate_private_key_format(key_pem)
        if not CertificateProcessor.key_matches_certificate(cert_pem, key_pem):
            raise CertificateError(f"Private key {key_path} does not match certificate {cert_path}")

        self.logger.info(f"Installing certificate: {name}", also_stdout=True)
        cert_dest = self.ssl_dir / f"{name}.cer"
        key_dest = self.ssl_dir / f"{name}.key"

        try:
            self.ssl_dir.mkdir(parents=True, exist_ok=True)
            self._stage(Path(cert_path), cert_dest)
            self._stage_private(Path(key_path), key_dest)
        except OSError as e:
            raise CertificateError(f"Failed to stage files in {self.ssl_dir}: {e}") from e

        self.logger.info(f"Files copied to {self.ssl_dir}")

        output = self.cli.add_certkey(name, str(cert_dest), str(key_dest))
        if NSOutputParser.already_exists(output):
            self.logger.info(f"Certkey {name} exists, updating", also_stdout=True)
            output = self.cli.update_certkey(name, str(cert_dest), str(key_dest))
            if NSOutputParser.is_error(output):
                raise DeviceRejected(f"update ssl certkey {name}", output)
            state = "updated"
        elif NSOutputParser.is_error(output):
            raise DeviceRejected(f"add ssl certkey {name}", output)
        else:
            state = "created"

        self.logger.info(f"Certificate {state}: {name}", also_stdout=True)
        return InstallResult(name=name, state=state, cert_path=str(cert_dest), key_path=str(key_dest), output=output.strip())

# ---------------------------
# Binding Reconciliation
# ---------------------------

class OutcomeStatus(Enum):
    ALREADY_BOUND = "already_bound"
    BOUND = "bound"
    SKIPPED = "skipped"
    BIND_FAILED = "bind_failed"

class PlanStatus(Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"

@dataclass
class PlannedBinding:
    endpoint: Endpoint
    credential: str

@dataclass
class BindingPlan:
    """Ordered endpoint/certkey pairs chosen for one run."""
    entries: List[PlannedBinding] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @classmethod
    def for_endpoints(cls, endpoints: Iterable[Endpoint], credential: str) -> "BindingPlan":
        return cls([PlannedBinding(ep, credential) for ep in endpoints])

    @staticmethod
    def parse_selection(selection: Optional[str], endpoints: Sequence[Endpoint]) -> List[Endpoint]:
        """Resolve '1 3 5', 'lb1,gw1', 'a'/'all' or '0'/'skip'/'' against a listing."""
        text = (selection or "").strip()
        if text.lower() in ("", "0", "skip", "none"):
            return []
        if text.lower() in ("a", "all"):
            return list(endpoints)

        by_name = {ep.name: ep for ep in endpoints}
        chosen = []
        for token in re.split(r"[\s,]+", text):
            if not token:
                continue
            if token in by_name:
                endpoint = by_name[token]
            elif token.isdigit() and 1 <= int(token) <= len(endpoints):
                endpoint = endpoints[int(token) - 1]
            else:
                raise ConfigurationError(f"Invalid vserver selection: {token}")
            chosen.append(endpoint)
        return chosen

@dataclass
class BindingOutcome:
    endpoint: Endpoint
    credential: str
    status: OutcomeStatus
    previous: Optional[str] = None
    reason: Optional[str] = None
    unbind_warning: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "vserver": self.endpoint.name,
            "kind": self.endpoint.kind.value,
            "certkey": self.credential,
            "status": self.status.value,
            "previous": self.previous,
            "reason": self.reason,
            "unbind_warning": self.unbind_warning,
        }

@dataclass
class ReconcileReport:
    outcomes: List[BindingOutcome] = field(default_factory=list)

    @property
    def status(self) -> PlanStatus:
        if any(o.status == OutcomeStatus.BIND_FAILED for o in self.outcomes):
            return PlanStatus.PARTIAL_FAILURE
        return PlanStatus.SUCCESS

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def as_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "outcomes": [o.as_dict() for o in self.outcomes]}

ReplaceConfirm = Callable[[Endpoint, str, str], bool]

class BindingReconciler:
    """Bind a certkey to each planned vserver, replacing bindings only on confirmation.

    Entries are handled in order and independently; a failed bind never stops
    the remaining entries. Binding state is queried from the appliance right
    before each decision.
    """

    def __init__(self, cli: NSCli, directory: EndpointDirectory, logger: Logger, confirm_replace: ReplaceConfirm):
        self.cli = cli
        self.directory = directory
        self.logger = logger
        self.confirm_replace = confirm_replace

    def apply(self, plan: BindingPlan) -> ReconcileReport:
        report = ReconcileReport()
        for entry in plan:
            report.outcomes.append(self._reconcile(entry.endpoint, entry.credential))

        bound = report.count(OutcomeStatus.BOUND)
        failed = report.count(OutcomeStatus.BIND_FAILED)
        if failed:
            self.logger.warn(f"Binding finished with {failed} failure(s), {bound} bound")
        else:
            self.logger.info(f"Binding finished: {bound} bound, {report.count(OutcomeStatus.ALREADY_BOUND)} already bound")
        return report

    def _reconcile(self, endpoint: Endpoint, credential: str) -> BindingOutcome:
        current = self.directory.current_credential(endpoint)

        if current == credential:
            self.logger.info(f"{endpoint.name}: {credential} already bound", also_stdout=True)
            return BindingOutcome(endpoint, credential, OutcomeStatus.ALREADY_BOUND, previous=current)

        unbind_warning = None
        if current:
            self.logger.warn(f"{endpoint.name}: existing certificate bound: {current}", also_stdout=True)
            if not self.confirm_replace(endpoint, current, credential):
                self.logger.info(f"{endpoint.name}: skipped", also_stdout=True)
                return BindingOutcome(endpoint, credential, OutcomeStatus.SKIPPED, previous=current)

            self.logger.info(f"Unbinding {current} from {endpoint.name}")
            output = self.cli.unbind_certkey(endpoint.name, current)
            if NSOutputParser.is_error(output):
                unbind_warning = output.strip()
                self.logger.warn(f"{endpoint.name}: unbind warning: {unbind_warning}", also_stdout=True)

        self.logger.info(f"Binding {credential} to {endpoint.name}")
        output = self.cli.bind_certkey(endpoint.name, credential)
        if not NSOutputParser.is_done(output) and NSOutputParser.is_error(output):
            reason = output.strip()
            self.logger.error(f"{endpoint.name}: failed to bind: {reason}", also_stdout=True)
            return BindingOutcome(endpoint, credential, OutcomeStatus.BIND_FAILED, previous=current,
                                  reason=reason, unbind_warning=unbind_warning)

        self.logger.info(f"{endpoint.name}: certificate bound", also_stdout=True)
        return BindingOutcome(endpoint, credential, OutcomeStatus.BOUND, previous=current, unbind_warning=unbind_warning)

# ---------------------------
# ACME (acme.sh) Client
# ---------------------------

DOMAIN_RE = re.compile(r"^(\*\.)?([A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z0-9-]{2,63}$")

def _split_domains(value: Union[None, str, Iterable[str]]) -> List[str]:
    if value is None:
        return []
    items = value.split(",") if isinstance(value, str) else list(value)
    return [item.strip() for item in items if item and item.strip()]

@dataclass(frozen=True)
class DomainRequest:
    """Primary domain, SAN entries and key length for one issuance."""
    domain: str
    san: Tuple[str, ...] = ()
    key_length: str = "2048"

    def __post_init__(self):
        if not self.domain or not DOMAIN_RE.match(self.domain):
            raise ValueError(f"Invalid domain name: {self.domain!r}")
        for name in self.san:
            if not DOMAIN_RE.match(name):
                raise ValueError(f"Invalid SAN domain name: {name!r}")
        if self.key_length not in KEY_LENGTHS:
            raise ValueError(f"key_length must be one of {list(KEY_LENGTHS)}, got: {self.key_length}")

    @classmethod
    def build(cls, domain: str, san: Union[None, str, Iterable[str]] = None, key_length: Union[str, int] = "2048") -> "DomainRequest":
        """Trim and deduplicate SANs, dropping the primary domain."""
        primary = (domain or "").strip().lower()
        sans: List[str] = []
        for name in _split_domains(san):
            name = name.lower()
            if name != primary and name not in sans:
                sans.append(name)
        return cls(primary, tuple(sans), str(key_length).strip().lower())

    @property
    def is_ecc(self) -> bool:
        return self.key_length.startswith("ec-")

@dataclass
class DnsChallenge:
    domain: str
    txt_value: str

@dataclass
class AcmeResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

class AcmeClient:
    """Drive an acme.sh installation in manual DNS mode."""

    CHALLENGE_DOMAIN = re.compile(r"Domain:\s*['\"]?([^'\"\s]+)['\"]?")
    CHALLENGE_TXT = re.compile(r"TXT value:\s*['\"]?([^'\"\s]+)['\"]?")

    def __init__(self, acme_home: Union[str, Path], server: str, logger: Logger):
        self.acme_home = Path(acme_home)
        self.server = server
        self.logger = logger

    @classmethod
    def locate(cls, acme_home: Union[str, Path], server: str, logger: Logger,
               fallbacks: Sequence[str] = ACME_FALLBACK_HOMES) -> "AcmeClient":
        """Find acme.sh in the configured home or the usual locations."""
        for home in [str(acme_home), *fallbacks]:
            if (Path(home) / "acme.sh").is_file():
                return cls(home, server, logger)
        raise TransportUnavailable(f"acme.sh not found in {acme_home} or {', '.join(fallbacks)}")

    @property
    def script(self) -> Path:
        return self.acme_home / "acme.sh"

    def _run(self, args: List[str], output_path: Optional[Path] = None) -> AcmeResult:
        argv = [str(self.script), *args]
        self.logger.debug(f"acme.sh {' '.join(args)}")

        try:
            if output_path is None:
                proc = subprocess.run(argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
                output = proc.stdout or ""
            else:
                with open(output_path, "w", encoding="utf-8") as fp:
                    proc = subprocess.run(argv, stdout=fp, stderr=subprocess.STDOUT, text=True)
                output = Path(output_path).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise TransportUnavailable(f"Cannot execute {self.script}: {e}") from e

        self.logger.debug(f"acme.sh exited rc={proc.returncode}", context={"output": output})
        return AcmeResult(proc.returncode, output)

    def issue(self, request: DomainRequest, output_path: Optional[Path] = None) -> AcmeResult:
        args = ["--issue", "--dns", "-d", request.domain]
        for name in request.san:
            args += ["-d", name]
        args += ["--keylength", request.key_length, "--server", self.server, ACME_MANUAL_DNS_ACK]
        return self._run(args, output_path)

    def renew(self, request: DomainRequest) -> AcmeResult:
        args = ["--renew", "-d", request.domain, "--server", self.server, ACME_MANUAL_DNS_ACK, "--force"]
        if request.is_ecc:
            args.append("--ecc")
        return self._run(args)

    def list_certificates(self) -> str:
        return self._run(["--list"]).output

    @classmethod
    def parse_challenges(cls, output: str) -> List[DnsChallenge]:
        """Pair 'Domain:' lines with the 'TXT value:' lines that follow them."""
        challenges = []
        pending_domain = None
        for line in output.splitlines():
            txt = cls.CHALLENGE_TXT.search(line)
            if txt:
                if pending_domain:
                    challenges.append(DnsChallenge(pending_domain, txt.group(1)))
                    pending_domain = None
                continue
            domain = cls.CHALLENGE_DOMAIN.search(line)
            if domain:
                pending_domain = domain.group(1)
        return challenges

def _build_session() -> "requests.Session":
    """Build requests session with retry policy."""
    session = requests.Session()
    retry = Retry(
        total=3,
        connect=3,
        read=3,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["GET", "HEAD"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session

def _check_archive_members(tar: tarfile.TarFile, dest: Path):
    """Reject members that would land outside dest or are device files."""
    root = dest.resolve()

    def inside(path: Path) -> bool:
        return path == root or root in path.parents

    for member in tar.getmembers():
        target = (root / member.name).resolve()
        if not inside(target):
            raise IssuanceError(f"Unsafe path in acme.sh archive: {member.name}")
        if member.isdev():
            raise IssuanceError(f"Device file in acme.sh archive: {member.name}")
        if member.issym() and not inside((target.parent / member.linkname).resolve()):
            raise IssuanceError(f"Unsafe symlink in acme.sh archive: {member.name} -> {member.linkname}")
        if member.islnk() and not inside((root / member.linkname).resolve()):
            raise IssuanceError(f"Unsafe hard link in acme.sh archive: {member.name} -> {member.linkname}")

def _extract_archive(tarball: Path, dest: Path):
    try:
        with tarfile.open(tarball, "r:gz") as tar:
            _check_archive_members(tar, dest)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, filter="data")
            else:
                tar.extractall(dest)
    except (tarfile.TarError, OSError) as e:
        raise IssuanceError(f"Failed to unpack acme.sh archive: {e}") from e

def install_acme(acme_home: Union[str, Path], logger: Logger, timeouts: Tuple[int, int] = (5, 60),
                 url: str = ACME_TARBALL_URL, server: str = "letsencrypt") -> AcmeClient:
    """Download acme.sh, install it into acme_home and set the default CA."""
    acme_home = Path(acme_home)
    logger.info(f"Installing acme.sh to {acme_home}", also_stdout=True)
    workdir = Path(tempfile.mkdtemp(prefix="acme_install_"))

    try:
        session = _build_session()
        tarball = workdir / "acme.tar.gz"
        try:
            with session.get(url, timeout=timeouts, stream=True) as response:
                response.raise_for_status()
                with open(tarball, "wb") as fp:
                    for chunk in response.iter_content(chunk_size=65536):
                        fp.write(chunk)
        except requests.exceptions.RequestException as e:
            raise TransportUnavailable(f"Failed to download acme.sh: {e}") from e

        _extract_archive(tarball, workdir)

        sources = sorted(workdir.glob("*/acme.sh"))
        if not sources:
            raise IssuanceError("acme.sh archive does not contain acme.sh")
        src_dir = sources[0].parent

        acme_home.mkdir(parents=True, exist_ok=True)
        proc = subprocess.run(["sh", "./acme.sh", "--install", "--home", str(acme_home), "--nocron"],
                              cwd=src_dir, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        if proc.returncode != 0 or not (acme_home / "acme.sh").is_file():
            raise IssuanceError("Failed to install acme.sh", proc.stdout or "")

        client = AcmeClient(acme_home, server, logger)
        client._run(["--set-default-ca", "--server", server])
        logger.info("acme.sh installed successfully", also_stdout=True)
        return client
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

# ---------------------------
# Issuance State Machine
# ---------------------------

class IssuanceState(Enum):
    REQUESTED = "requested"
    CHALLENGE_PENDING = "challenge_pending"
    VERIFYING = "verifying"
    ISSUED = "issued"
    FAILED = "failed"

class IssuanceOrchestrator:
    """Two-phase manual DNS-01 issuance for one DomainRequest.

    ``start()`` asks acme.sh for challenge tokens; if any are returned the run
    waits in CHALLENGE_PENDING until ``confirm()`` is called, which finalizes
    through a forced renew. ``renew()`` takes the forced-renew path directly.
    A run only ends ISSUED once the store can resolve the chain and key.
    """

    def __init__(self, request: DomainRequest, acme: AcmeClient, store: CertificateStore, logger: Logger,
                 workdir: Optional[Union[str, Path]] = None):
        self.request = request
        self.acme = acme
        self.store = store
        self.logger = logger
        self.workdir = workdir
        self.state = IssuanceState.REQUESTED
        self.challenges: List[DnsChallenge] = []
        self.material: Optional[CertificateMaterial] = None
        self.failure: Optional[str] = None
        self.output: str = ""

    def _transition(self, state: IssuanceState):
        self.logger.debug(f"{self.request.domain}: {self.state.value} -> {state.value}")
        self.state = state

    def _require(self, *states: IssuanceState):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise IssuanceError(f"Cannot continue issuance for {self.request.domain} from state "
                                f"{self.state.value} (expected {allowed})")

    def _fail(self, reason: str, output: str = "") -> IssuanceState:
        self.failure = reason
        if output:
            self.output = output
        self.logger.error(f"{self.request.domain}: {reason}")
        self._transition(IssuanceState.FAILED)
        return self.state

    def _issued(self) -> IssuanceState:
        self._transition(IssuanceState.ISSUED)
        try:
            self.material = self.store.resolve(self.request.domain)
        except CertificateNotFound as e:
            return self._fail(f"acme.sh reported success but no certificate files were found "
                              f"(searched {', '.join(e.searched)})")
        self.logger.info(f"Certificate issued for {self.request.domain} at {self.material.directory}")
        return self.state

    def start(self) -> IssuanceState:
        """Request challenge tokens."""
        self._require(IssuanceState.REQUESTED)
        fd, name = tempfile.mkstemp(prefix="acme_output_", suffix=".txt", dir=self.workdir)
        os.close(fd)
        output_path = Path(name)

        try:
            result = self.acme.issue(self.request, output_path)
        finally:
            output_path.unlink(missing_ok=True)

        self.output = result.output
        self.challenges = self.acme.parse_challenges(result.output)
        if self.challenges:
            self.logger.info(f"{self.request.domain}: {len(self.challenges)} DNS TXT record(s) required")
            self._transition(IssuanceState.CHALLENGE_PENDING)
            return self.state

        self.logger.info(f"{self.request.domain}: no manual DNS step required (acme.sh rc={result.returncode})")
        return self._issued()

    def confirm(self) -> IssuanceState:
        """DNS records are published; finalize issuance."""
        self._require(IssuanceState.CHALLENGE_PENDING)
        return self._verify()

    def renew(self) -> IssuanceState:
        """Forced renew without a challenge round."""
        self._require(IssuanceState.REQUESTED)
        return self._verify()

    def _verify(self) -> IssuanceState:
        self._transition(IssuanceState.VERIFYING)
        result = self.acme.renew(self.request)
        self.output = result.output
        if not result.ok:
            return self._fail(f"acme.sh renew failed (rc={result.returncode})", result.output)
        return self._issued()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.request.domain,
            "san": list(self.request.san),
            "state": self.state.value,
            "challenges": [{"domain": c.domain, "txt_value": c.txt_value} for c in self.challenges],
            "directory": str(self.material.directory) if self.material else None,
            "variant": self.material.variant.value if self.material else None,
            "failure": self.failure,
        }

# ---------------------------
# Configuration Management
# ---------------------------

class ConfigManager:
    """Handle configuration loading and validation."""

    @staticmethod
    def load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not path:
            return {}

        if yml is None:
            raise ConfigurationError(
                "YAML config requested but PyYAML is not installed.\n"
                "    pip:  pip3 install pyyaml\n"
                "    apt:  sudo apt-get install python3-yaml"
            )

        config_path = Path(path).expanduser().resolve()

        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = yml.safe_load(f) or {}
        except (OSError, yml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config file {path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigurationError("Config file must contain a YAML dictionary")

        return {str(k).replace("-", "_"): v for k, v in config.items()}

    @staticmethod
    def merge_args_with_config(args: argparse.Namespace, cfg: Dict[str, Any]) -> Config:
        """Merge CLI arguments with config file (CLI wins)."""
        args_dict = {}
        exclude_keys = {"config"}

        for key, value in vars(args).items():
            if key in exclude_keys:
                continue
            if value is not None and value != "" and value is not False:
                args_dict[key] = value

        merged = {**cfg, **args_dict}

        valid_keys = set(Config.__annotations__.keys())
        unknown_keys = set(merged.keys()) - valid_keys
        if unknown_keys:
            print(f"[!] Warning: Unknown config keys ignored: {', '.join(sorted(unknown_keys))}")
            merged = {k: v for k, v in merged.items() if k in valid_keys}

        try:
            return Config(**merged)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Configuration error: {e}") from e

# ---------------------------
# Console Prompts
# ---------------------------

class ConsolePrompter:
    """Operator prompts; assume_yes answers yes/no questions automatically."""

    def __init__(self, assume_yes: bool = False, input_func: Callable[[str], str] = input):
        self.assume_yes = assume_yes
        self.input = input_func

    def confirm(self, question: str) -> bool:
        if self.assume_yes:
            print(f"{question} (y/n): y")
            return True
        return self.input(f"{question} (y/n): ").strip().lower() in ("y", "yes")

    def acknowledge(self, message: str):
        self.input(f"{message} ")

    def ask(self, question: str, default: Optional[str] = None) -> str:
        """Free-text answer; with assume_yes a question that has a default is not asked."""
        if self.assume_yes and default is not None:
            return default
        suffix = f" [{default}]" if default else ""
        answer = self.input(f"{question}{suffix}: ").strip()
        return answer or (default or "")

    def confirm_replace(self, endpoint: Endpoint, current: str, intended: str) -> bool:
        return self.confirm(f"  {endpoint.name}: unbind {current} and bind {intended}?")

# ---------------------------
# Main Application
# ---------------------------

class NetScalerAcme:
    """Main application class."""

    def __init__(self, prompter: Optional[ConsolePrompter] = None):
        self.logger: Optional[Logger] = None
        self.config: Optional[Config] = None
        self.prompter = prompter

    def parse_arguments(self, argv: Optional[List[str]] = None) -> argparse.Namespace:
        """Parse command line arguments."""
        parser = argparse.ArgumentParser(
            description="Issue Let's Encrypt certificates with acme.sh (DNS-01) and bind them to NetScaler SSL vservers.",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )

        # Appliance access
        parser.add_argument("--host", help="NetScaler address (default: 127.0.0.1)")
        parser.add_argument("--user", help="NetScaler user (default: nsroot)")
        parser.add_argument("--password", help="NetScaler password (or NETSCALER_PASSWORD)")
        parser.add_argument("--nscli", help="Path to nscli")

        # acme.sh
        parser.add_argument("--acme-home", dest="acme_home", help=f"acme.sh home (default: {DEFAULT_ACME_HOME})")
        parser.add_argument("--acme-server", dest="acme_server", help="ACME server (default: letsencrypt)")
        parser.add_argument("--key-length", dest="key_length", choices=KEY_LENGTHS, help="Key length (default: 2048)")

        # Certificate settings
        parser.add_argument("--domain", help="Primary domain")
        parser.add_argument("--san", help="Additional SAN domains, comma-separated")
        parser.add_argument("--name", help="Certkey name on NetScaler (default: domain with '_' separators)")
        parser.add_argument("--cert", help="Certificate file for --install")
        parser.add_argument("--key", help="Private key file for --install")
        parser.add_argument("--ssl-dir", dest="ssl_dir", help=f"NetScaler SSL directory (default: {DEFAULT_SSL_DIR})")
        parser.add_argument("--bind", help="Vservers to bind: numbers or names, 'all', or 'skip'")
        parser.add_argument("-y", "--yes", action="store_true", help="Answer yes to confirmations")

        parser.add_argument("--timeout-connect", dest="timeout_connect", type=int)
        parser.add_argument("--timeout-read", dest="timeout_read", type=int)

        # Configuration
        parser.add_argument("-C", "--config", help="YAML config file")

        # Operation modes
        mode_group = parser.add_mutually_exclusive_group()
        mode_group.add_argument("--install", action="store_true", help="Install an existing certificate and key")
        mode_group.add_argument("--renew", action="store_true", help="Force-renew --domain and update --name")
        mode_group.add_argument("--list-endpoints", dest="list_endpoints", action="store_true",
                                help="List SSL virtual servers and their certificates")
        mode_group.add_argument("--list-certs", dest="list_certs", action="store_true",
                                help="List installed certkeys with expiration")
        mode_group.add_argument("--install-acme", dest="install_acme", action="store_true",
                                help="Download and install acme.sh")

        # Logging
        parser.add_argument("--log", help="Write a plain log to this file")
        parser.add_argument("--log-level", dest="log_level", choices=["standard", "debug"],
                            help="Log verbosity when --log is used (default: standard)")

        return parser.parse_args(argv)

    def setup_logging(self, config: Config):
        """Setup logging."""
        log_level = LogLevel.DEBUG if config.log_level == "debug" else LogLevel.STANDARD
        self.logger = Logger(config.log, log_level, secrets=[config.password or ""])
        self.logger.set_operation_id(uuid.uuid4().hex)

    def print_effective_config(self, config: Config):
        """Print effective configuration."""
        print("[*] Effective configuration:")
        print(f"    mode: {config.mode}")
        print(f"    host: {config.host}")
        print(f"    user: {config.user}")
        print(f"    acme_home: {config.acme_home}")
        print(f"    acme_server: {config.acme_server}")
        print(f"    key_length: {config.key_length}")
        print(f"    ssl_dir: {config.ssl_dir}")
        if config.log:
            print(f"    log: {config.log}")
            print(f"    log_level: {config.log_level}")

    # Collaborators

    def _password(self, config: Config) -> str:
        password = config.password or os.environ.get("NETSCALER_PASSWORD")
        if not password:
            password = getpass.getpass(f"Password for {config.user}@{config.host}: ")
        if not password:
            raise ConfigurationError("Password is required")
        return password

    def connect(self, config: Config) -> NSCli:
        if not any(os.path.isdir(p) for p in NS_MARKERS):
            self.logger.warn("No /nsconfig directory found; this does not look like a NetScaler appliance",
                             also_stdout=True)
        nscli = find_nscli(config.nscli)
        self.logger.info(f"Found nscli at: {nscli}")

        session = DeviceSession(config.host, config.user, self._password(config))
        cli = NSCli(session, nscli, self.logger)
        version = cli.verify_credentials()
        self.logger.info(f"Credentials verified: {version.splitlines()[0] if version else config.host}",
                         also_stdout=True)
        return cli

    def acme_client(self, config: Config) -> AcmeClient:
        try:
            acme = AcmeClient.locate(config.acme_home, config.acme_server, self.logger)
        except TransportUnavailable:
            self.logger.warn("acme.sh not found", also_stdout=True)
            if not self.prompter.confirm("Install acme.sh now?"):
                raise
            acme = install_acme(config.acme_home, self.logger, (config.timeout_connect, config.timeout_read),
                                server=config.acme_server)
        self.logger.info(f"acme.sh found at: {acme.acme_home}")
        return acme

    # Binding selection

    def describe_endpoints(self, directory: EndpointDirectory) -> List[Endpoint]:
        endpoints = directory.list_all()
        current_kind = None
        for idx, endpoint in enumerate(endpoints, start=1):
            if endpoint.kind != current_kind:
                current_kind = endpoint.kind
                print(f"\n[*] {current_kind.value} SSL virtual servers:")
            bound = directory.current_credential(endpoint)
            print(f"    {idx}) {endpoint.name}" + (f" (Cert: {bound})" if bound else ""))
        return endpoints

    def bind_selected(self, cli: NSCli, credential: str, config: Config) -> Optional[ReconcileReport]:
        directory = EndpointDirectory(cli, self.logger)
        endpoints = self.describe_endpoints(directory)
        if not endpoints:
            self.logger.warn("No SSL virtual servers found", also_stdout=True)
            return None

        selection = config.bind
        if selection is None:
            print("\n    a) Select ALL\n    0) Skip binding")
            selection = self.prompter.ask("Enter numbers separated by spaces (e.g., 1 3 5), 'a' for all, or 0 to skip", "")

        chosen = BindingPlan.parse_selection(selection, endpoints)
        if not chosen:
            self.logger.info("Skipping certificate binding", also_stdout=True)
            return None

        reconciler = BindingReconciler(cli, directory, self.logger, self.prompter.confirm_replace)
        return reconciler.apply(BindingPlan.for_endpoints(chosen, credential))

    def _finish(self, cli: NSCli, result: Dict[str, Any], report: Optional[ReconcileReport]) -> Dict[str, Any]:
        if report is not None:
            result["bindings"] = report.as_dict()
            if report.status == PlanStatus.PARTIAL_FAILURE:
                result["status"] = "partial_failure"

        self.logger.info("Saving configuration", also_stdout=True)
        cli.save_config()
        self.logger.info("Configuration saved", also_stdout=True)
        return result

    # Modes

    def run_issue_mode(self, config: Config) -> Dict[str, Any]:
        """Request a new certificate, install it and bind it."""
        domain = config.domain or self.prompter.ask("Primary domain (e.g., www.example.com)")
        if not domain:
            raise ConfigurationError("Domain is required")
        san = config.san if config.san is not None else self.prompter.ask("Additional SAN domains (comma-separated, or leave empty)", "")
        try:
            request = DomainRequest.build(domain, san, config.key_length)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        name = config.name or self.prompter.ask("Certificate name in NetScaler", derive_credential_name(request.domain))

        print(f"[*] Primary domain: {request.domain}")
        print(f"[*] SAN domains: {', '.join(request.san) or 'None'}")
        print(f"[*] Certkey name: {name}")
        if not self.prompter.confirm("Proceed?"):
            return {"status": "cancelled", "version": VERSION}

        acme = self.acme_client(config)
        cli = self.connect(config)
        store = CertificateStore.for_acme_home(acme.acme_home)
        issuance = IssuanceOrchestrator(request, acme, store, self.logger)

        self.logger.info(f"Requesting certificate for: {request.domain}", also_stdout=True)
        state = issuance.start()
        if state == IssuanceState.CHALLENGE_PENDING:
            print("\n[*] DNS TXT records required:")
            for challenge in issuance.challenges:
                print(f"    Domain:    {challenge.domain}")
                print(f"    TXT value: {challenge.txt_value}")
            print("[*] Add the TXT record(s) to your DNS and wait for propagation (1-5 minutes).")
            self.prompter.acknowledge("Press ENTER when DNS records are in place...")
            self.logger.info("Verifying DNS and completing issuance", also_stdout=True)
            state = issuance.confirm()

        if state != IssuanceState.ISSUED:
            raise IssuanceError(f"Certificate issuance failed: {issuance.failure}", issuance.output)

        material = issuance.material
        print(CertificateProcessor.summarize_chain(material.chain.decode("utf-8", errors="ignore")))
        installed = CertificateInstaller(cli, config.ssl_dir, self.logger).install(name, material.chain_path, material.key_path)
        report = self.bind_selected(cli, name, config)

        result = {
            "status": "ok",
            "issuance": issuance.as_dict(),
            "certificate": {"name": name, "state": installed.state},
            "version": VERSION,
        }
        return self._finish(cli, result, report)

    def run_install_mode(self, config: Config) -> Dict[str, Any]:
        """Install an existing certificate/key pair and bind it."""
        cert = config.cert or self.prompter.ask("Path to certificate file (fullchain.pem or .cer)")
        key = config.key or self.prompter.ask("Path to private key file (.key)")
        name = config.name or self.prompter.ask("Certificate name in NetScaler")
        if not name:
            raise ConfigurationError("Certificate name is required")

        print(CertificateProcessor.summarize_chain(CertificateProcessor.load_file(cert)))
        cli = self.connect(config)
        installed = CertificateInstaller(cli, config.ssl_dir, self.logger).install(name, cert, key)
        report = self.bind_selected(cli, name, config)

        result = {
            "status": "ok",
            "certificate": {"name": name, "state": installed.state},
            "version": VERSION,
        }
        return self._finish(cli, result, report)

    def run_renew_mode(self, config: Config) -> Dict[str, Any]:
        """Force-renew a domain and refresh its certkey."""
        acme = self.acme_client(config)
        domain = config.domain
        if not domain:
            print(acme.list_certificates())
            domain = self.prompter.ask("Enter domain to renew")
        if not domain:
            raise ConfigurationError("Domain is required")
        try:
            request = DomainRequest.build(domain, None, config.key_length)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        store = CertificateStore.for_acme_home(acme.acme_home)
        issuance = IssuanceOrchestrator(request, acme, store, self.logger)
        self.logger.info(f"Renewing certificate for {request.domain}", also_stdout=True)
        if issuance.renew() != IssuanceState.ISSUED:
            raise IssuanceError(f"Renewal failed: {issuance.failure}", issuance.output)

        result = {"status": "ok", "issuance": issuance.as_dict(), "version": VERSION}
        name = config.name if config.name is not None else self.prompter.ask("Certificate name in NetScaler to update", "")
        if not name:
            self.logger.info("Certificate renewed. Use --install to update NetScaler.", also_stdout=True)
            return result

        cli = self.connect(config)
        material = issuance.material
        installed = CertificateInstaller(cli, config.ssl_dir, self.logger).install(name, material.chain_path, material.key_path)
        result["certificate"] = {"name": name, "state": installed.state}
        report = self.bind_selected(cli, name, config) if config.bind else None
        return self._finish(cli, result, report)

    def run_list_endpoints_mode(self, config: Config) -> Dict[str, Any]:
        cli = self.connect(config)
        directory = EndpointDirectory(cli, self.logger)
        endpoints = self.describe_endpoints(directory)
        return {
            "status": "ok",
            "vservers": [{"name": ep.name, "kind": ep.kind.value} for ep in endpoints],
            "version": VERSION,
        }

    def run_list_certs_mode(self, config: Config) -> Dict[str, Any]:
        cli = self.connect(config)
        certkeys = cli.list_certkeys()
        for info in certkeys:
            days = "n/a" if info.days_to_expiration is None else info.days_to_expiration
            print(f"    {info.name} - {info.status or 'unknown'}, days to expiration: {days}")
        return {
            "status": "ok",
            "certkeys": [{"name": c.name, "status": c.status, "days_to_expiration": c.days_to_expiration}
                         for c in certkeys],
            "version": VERSION,
        }

    def run_install_acme_mode(self, config: Config) -> Dict[str, Any]:
        acme = install_acme(config.acme_home, self.logger, (config.timeout_connect, config.timeout_read),
                            server=config.acme_server)
        return {"status": "ok", "acme_home": str(acme.acme_home), "version": VERSION}

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Main application entry point."""
        try:
            args = self.parse_arguments(argv)

            yaml_config = ConfigManager.load_yaml_config(args.config)
            self.config = ConfigManager.merge_args_with_config(args, yaml_config)

            self.setup_logging(self.config)
            if self.prompter is None:
                self.prompter = ConsolePrompter(assume_yes=self.config.yes)

            self.print_effective_config(self.config)

            modes = {
                "issue": self.run_issue_mode,
                "install": self.run_install_mode,
                "renew": self.run_renew_mode,
                "list_endpoints": self.run_list_endpoints_mode,
                "list_certs": self.run_list_certs_mode,
                "install_acme": self.run_install_acme_mode,
            }
            result = modes[self.config.mode](self.config)

            print(json.dumps(result, indent=2))

            if result.get("status") in ("ok", "cancelled"):
                self.logger.info("Certificate operation completed successfully")
                return 0
            self.logger.error(f"Certificate operation finished with status: {result.get('status')}")
            return 1

        except ConfigurationError as e:
            print(f"[!] Configuration error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Configuration error: {e}")
            return 1
        except CertificateError as e:
            print(f"[!] Certificate error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Certificate error: {e}")
            return 1
        except IssuanceError as e:
            print(f"[!] Issuance error: {e}", file=sys.stderr)
            if e.output:
                print(e.output, file=sys.stderr)
            if self.logger:
                self.logger.error(f"Issuance error: {e}", context={"output": e.output})
            return 1
        except DeviceRejected as e:
            print(f"[!] NetScaler error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"NetScaler error: {e}")
            return 2
        except TransportUnavailable as e:
            print(f"[!] Unavailable: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Unavailable: {e}")
            return 2
        except KeyboardInterrupt:
            print("\n[!] Interrupted by user")
            return 130
        except Exception as e:
            print(f"[!] Unexpected error: {e}", file=sys.stderr)
            if self.logger:
                self.logger.error(f"Unexpected error: {e}")
            return 1
        finally:
            if self.logger:
                self.logger.close()


def main():
    """Main entry point."""
    app = NetScalerAcme()
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
