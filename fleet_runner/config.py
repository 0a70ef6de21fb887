import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

DEFAULT_ENV_PATH = Path.cwd() / ".env"
DEFAULT_SERVICE_START = r"sc.exe \\{address} start WinRM"

@dataclass
class Config:
    # Auth
    username: str
    password: str

    # Sources
    hosts_file: Path
    commands_file: Path
    report_path: Path
    error_log_path: Path

    # File staging
    files: List[str]
    local_dir: Path
    remote_dir: str

    # Naming
    domain_suffix: str

    # WinRM settings
    winrm_port: int
    winrm_transport: str
    winrm_scheme: str
    verify_ssl: bool

    # Resilience / Performance
    connect_timeout: int
    read_timeout: int
    max_concurrency: int
    service_start_command: str

    # Trusted hosts
    manage_trusted_hosts: bool
    trust_wildcard: bool

    # Output
    max_error_length: int

    # Mode
    dry_run: bool
    debug: bool

    def address_for(self, host: str) -> str:
        """Resolve a fleet host identifier to the name used to connect."""
        suffix = (self.domain_suffix or "").strip().lstrip(".")
        if not suffix or host.lower().endswith("." + suffix.lower()):
            return host
        return f"{host}.{suffix}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a command batch against a fleet of Windows hosts until every host succeeds")

    # Auth args
    parser.add_argument("--username", help="WinRM Username")
    parser.add_argument("--password", help="WinRM Password")

    # Sources
    parser.add_argument("--hosts-file", default="hosts.txt", help="Host list, one name per line")
    parser.add_argument("--commands-file", default="commands.txt", help="Command list, one command per line")
    parser.add_argument("--report", default="report.csv", help="Per-host status report (read and rewritten)")
    parser.add_argument("--error-log", default="errors.csv", help="Append-only log of every attempt")

    # File staging
    parser.add_argument("--files", help="Comma-separated file names to upload before the commands run")
    parser.add_argument("--local-dir", default=".", help="Directory the --files names are resolved against")
    parser.add_argument("--remote-dir", default=r"C:\Windows\Temp", help="Writable directory on the remote hosts")

    # Naming
    parser.add_argument("--domain-suffix", default="", help="Domain appended to host names at connect time")

    # WinRM config
    parser.add_argument("--winrm-port", type=int, default=5985, help="WinRM Port (default 5985)")
    parser.add_argument("--winrm-transport", default="ntlm", choices=["ntlm", "kerberos", "basic", "credssp"], help="WinRM Transport")
    parser.add_argument("--winrm-scheme", default="http", choices=["http", "https"], help="WinRM Scheme")
    parser.add_argument("--insecure", action="store_true", help="Ignore SSL cert validation")

    # Resilience
    parser.add_argument("--connect-timeout", type=int, default=5, help="Reachability timeout (sec)")
    parser.add_argument("--read-timeout", type=int, default=120, help="Timeout (sec) per remote operation")
    parser.add_argument("--concurrency", type=int, default=1, help="Max parallel hosts (default 1, sequential)")
    parser.add_argument(
        "--service-start-command",
        default=DEFAULT_SERVICE_START,
        help="Local command that starts the remote WinRM service; {address} is substituted. Empty to skip",
    )

    # Trusted hosts
    parser.add_argument("--manage-trusted-hosts", action="store_true", help="Add each host to the local WinRM TrustedHosts list for the attempt")
    parser.add_argument("--trust-wildcard", action="store_true", help="Trust *.<domain-suffix> instead of each host name")

    # Output
    parser.add_argument("--max-error-length", type=int, default=1000, help="Truncate logged error details to this length")

    # Flags
    parser.add_argument("--dry-run", action="store_true", help="Show pending hosts and the command plan, do not connect")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--env-file", help="Path to .env file")
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> Config:
    args = build_parser().parse_args(argv)

    # Load Env
    env_path = Path(args.env_file) if args.env_file else DEFAULT_ENV_PATH
    if env_path.exists():
        load_dotenv(env_path)

    username = args.username or os.getenv("FLEET_USER") or ""
    password = args.password or os.getenv("FLEET_PASSWORD") or ""
    domain_suffix = args.domain_suffix or os.getenv("FLEET_DOMAIN_SUFFIX") or ""

    files = [f.strip() for f in args.files.split(",") if f.strip()] if args.files else []

    return Config(
        username=username,
        password=password,
        hosts_file=Path(args.hosts_file),
        commands_file=Path(args.commands_file),
        report_path=Path(args.report),
        error_log_path=Path(args.error_log),
        files=files,
        local_dir=Path(args.local_dir),
        remote_dir=args.remote_dir,
        domain_suffix=domain_suffix,
        winrm_port=args.winrm_port,
        winrm_transport=args.winrm_transport,
        winrm_scheme=args.winrm_scheme,
        verify_ssl=not args.insecure,
        connect_timeout=args.connect_timeout,
        read_timeout=args.read_timeout,
        max_concurrency=max(1, args.concurrency),
        service_start_command=args.service_start_command,
        manage_trusted_hosts=args.manage_trusted_hosts,
        trust_wildcard=args.trust_wildcard,
        max_error_length=args.max_error_length,
        dry_run=args.dry_run,
        debug=args.debug,
    )
