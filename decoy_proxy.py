# decoy_proxy.py
"""
Decoy Proxy -- Forward HTTP Intercepting Endpoint.

ARCHITECTURE:
- CLI: argparse, colorama status lines.
- MANAGER: Delegates to 'proxy_manager.py' (log sink, lifecycle).
- CORE: 'proxy_core.py' (HTTP/1.1), 'classifier.py' (rules), 'forwarder.py' (httpx).
"""

import sys
import asyncio
import argparse
from typing import List, Optional

from colorama import Fore, Style, init as colorama_init

from structures import ProxyConfig, DEFAULT_PORT, DEFAULT_BIND, UPSTREAM_TIMEOUT
from proxy_common import StartupConfigurationError
from proxy_manager import ProxyManager, configure_log_sink

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="decoy-proxy",
        description="Decoy Proxy - answers forward-proxy requests with synthetic responses"
    )
    parser.add_argument("-l", "--logPath", "--log-path", dest="log_path", default="",
                        help="Log file path (Required)")
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT,
                        help=f"Proxy listen port (default: {DEFAULT_PORT})")
    parser.add_argument("-b", "--bind", default=DEFAULT_BIND,
                        help=f"Bind address (default: {DEFAULT_BIND})")
    parser.add_argument("--forward", action="store_true",
                        help="Forward requests that match no short-circuit rule upstream")
    parser.add_argument("--upstream-timeout", type=float, default=UPSTREAM_TIMEOUT,
                        help=f"Upstream request timeout in seconds (default: {UPSTREAM_TIMEOUT})")
    parser.add_argument("--insecure", action="store_true",
                        help="Skip TLS verification of upstream servers")
    parser.add_argument("--redact", action="store_true",
                        help="Redact sensitive header values in the log")
    return parser

def load_config(args: argparse.Namespace) -> ProxyConfig:
    """Turns parsed arguments into a ProxyConfig. The log path is mandatory."""
    if not args.log_path:
        raise StartupConfigurationError("Log file path is required")
    return ProxyConfig(
        host=args.bind,
        port=args.port,
        log_path=args.log_path,
        forwarding_enabled=args.forward,
        upstream_timeout=args.upstream_timeout if args.upstream_timeout > 0 else None,
        upstream_verify_ssl=not args.insecure,
        redact_sensitive_headers=args.redact
    )

def main(argv: Optional[List[str]] = None) -> int:
    colorama_init(autoreset=True)
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (StartupConfigurationError, ValueError) as e:
        print(f"{Fore.RED}[!] {e}{Style.RESET_ALL}", file=sys.stderr)
        parser.print_help(sys.stderr)
        return 1

    try:
        configure_log_sink(config.log_path)
    except OSError as e:
        print(f"{Fore.RED}[!] Cannot open log file: {e}{Style.RESET_ALL}", file=sys.stderr)
        return 1

    print(f"{Fore.YELLOW}[*] Logging to a file {config.log_path}{Style.RESET_ALL}")
    print(f"{Fore.CYAN}[*] Starting proxy server on {config.host}:{config.port}{Style.RESET_ALL}")

    manager = ProxyManager(config)
    try:
        asyncio.run(manager.run())
    except KeyboardInterrupt:
        pass
    except OSError as e:
        print(f"{Fore.RED}[!] ListenAndServe: {e}{Style.RESET_ALL}", file=sys.stderr)
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
