from __future__ import annotations
from argparse import ArgumentParser
import asyncio
import logging
import os
import sys
import uvicorn
from pydantic import BaseModel, Field, ValidationError

from . import __version__
from .directory import DirectoryConnection
from .directory.errors import LDAPError
from .gateway import app

log = logging.getLogger("http2ldap")


class Config(BaseModel, strict=True, frozen=True):
    host: str = "127.0.0.1"
    port: int = 8010
    ldap_url: str  # ldap://ldap.forumsys.com
    bind_dn: str = ""  # empty for anonymous bind
    bind_password: str = ""
    debug: bool = False
    # seconds, unbounded when None
    timeout: float | None = Field(default=None, gt=0)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes", "on")


def parse_config(argv: list[str] | None = None) -> Config:
    """Command line options win over HTTP2LDAP_* environment variables"""
    parser = ArgumentParser(
        prog="http2ldap", usage="%(prog)s [OPTIONS]...", add_help=False
    )
    parser.add_argument(
        "--help", action="help", help="show this help message and exit"
    )
    parser.add_argument(
        "-v", "--version", action="version", version=__version__
    )
    parser.add_argument(
        "-h",
        "--host",
        default=os.getenv("HTTP2LDAP_HOST") or "127.0.0.1",
        help="IP address to bind to. May also use HTTP2LDAP_HOST",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=os.getenv("HTTP2LDAP_PORT") or "8010",
        help="HTTP listening port. May also use HTTP2LDAP_PORT",
    )
    parser.add_argument(
        "-l",
        "--ldap",
        dest="ldap_url",
        default=os.getenv("HTTP2LDAP_LDAP_URL"),
        help="ldap url. May also use HTTP2LDAP_LDAP_URL",
    )
    parser.add_argument(
        "-b",
        "--bind",
        dest="bind_dn",
        default=os.getenv("HTTP2LDAP_BIND_DN", ""),
        help="bind dn. May also use HTTP2LDAP_BIND_DN",
    )
    parser.add_argument(
        "-w",
        "--password",
        dest="bind_password",
        default=os.getenv("HTTP2LDAP_BIND_PASSWORD", ""),
        help="bind password. May also use HTTP2LDAP_BIND_PASSWORD",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        default=_env_flag("HTTP2LDAP_DEBUG"),
        help="debug mode. May also use HTTP2LDAP_DEBUG=1",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=os.getenv("HTTP2LDAP_TIMEOUT") or None,
        help="search timeout in seconds. May also use HTTP2LDAP_TIMEOUT",
    )
    args = parser.parse_args(argv)
    if args.ldap_url is None:
        parser.error("ldap url is required (--ldap or HTTP2LDAP_LDAP_URL)")
    try:
        return Config.model_validate(vars(args))
    except ValidationError as e:
        parser.error(str(e))


async def _server_main(config: Config) -> int:
    try:
        directory = await DirectoryConnection.open(config.ldap_url)
    except LDAPError as e:
        log.critical("%s", e)
        return 1
    try:
        await directory.bind(config.bind_dn, config.bind_password)
    except LDAPError as e:
        log.critical("bind to %s failed: %s", config.ldap_url, e)
        await directory.close()
        return 1

    app.state.directory = directory
    app.state.search_timeout = config.timeout
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level="debug" if config.debug else "info",
            log_config=None,
        )
    )
    lost: list[LDAPError] = []

    def on_connection_lost(error: LDAPError) -> None:
        lost.append(error)
        server.should_exit = True

    directory.on_connection_lost = on_connection_lost
    log.info("http server listening on %s:%d", config.host, config.port)
    try:
        await server.serve()
    finally:
        await directory.close()
    if lost:
        log.critical("exiting: %s", lost[0])
        return 1
    return 0


def main() -> None:
    config = parse_config()
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.INFO)
    sys.exit(asyncio.run(_server_main(config)))


if __name__ == "__main__":
    main()
