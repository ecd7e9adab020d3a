from __future__ import annotations
from unittest import TestCase, IsolatedAsyncioTestCase, mock
import asyncio
import os
import uvicorn

from .__main__ import Config, _server_main, parse_config
from .directory.test_connection import BIND_DN, PASSWORD, FakeDirectoryServer

LDAP_URL = "ldap://ldap.forumsys.com"


def _environ(**values: str):
    return mock.patch.dict(
        os.environ, {f"HTTP2LDAP_{k}": v for k, v in values.items()}, clear=True
    )


class ConfigTest(TestCase):
    def test_command_line(self):
        with _environ():
            config = parse_config(
                [
                    "-h", "0.0.0.0",
                    "-p", "8010",
                    "-l", LDAP_URL,
                    "-b", BIND_DN,
                    "-w", "password",
                    "-d",
                ]
            )  # fmt: skip
        self.assertEqual(
            config,
            Config(
                host="0.0.0.0",
                port=8010,
                ldap_url=LDAP_URL,
                bind_dn=BIND_DN,
                bind_password="password",
                debug=True,
            ),
        )

    def test_environment(self):
        with _environ(
            HOST="10.0.0.1",
            PORT="9000",
            LDAP_URL=LDAP_URL,
            BIND_DN=BIND_DN,
            BIND_PASSWORD="secret",
            DEBUG="1",
            TIMEOUT="2.5",
        ):
            config = parse_config([])
        self.assertEqual(config.host, "10.0.0.1")
        self.assertEqual(config.port, 9000)
        self.assertEqual(config.ldap_url, LDAP_URL)
        self.assertEqual(config.bind_dn, BIND_DN)
        self.assertEqual(config.bind_password, "secret")
        self.assertTrue(config.debug)
        self.assertEqual(config.timeout, 2.5)

    def test_command_line_wins(self):
        with _environ(HOST="10.0.0.1", PORT="9000", LDAP_URL="ldap://env"):
            config = parse_config(["--host", "127.0.0.2", "--ldap", LDAP_URL])
        self.assertEqual(config.host, "127.0.0.2")
        self.assertEqual(config.port, 9000)
        self.assertEqual(config.ldap_url, LDAP_URL)

    def test_defaults(self):
        with _environ(LDAP_URL=LDAP_URL):
            config = parse_config([])
        self.assertEqual(config.host, "127.0.0.1")
        self.assertEqual(config.port, 8010)
        self.assertEqual(config.bind_dn, "")
        self.assertFalse(config.debug)
        self.assertIsNone(config.timeout)

    def test_missing_ldap_url(self):
        with _environ(), self.assertRaises(SystemExit):
            parse_config([])

    def test_non_positive_timeout(self):
        for value in ("0", "-1.5"):
            with _environ(LDAP_URL=LDAP_URL, TIMEOUT=value), self.assertRaises(
                SystemExit
            ):
                parse_config([])

    def test_invalid_port(self):
        with _environ(LDAP_URL=LDAP_URL, PORT="http"), self.assertRaises(
            SystemExit
        ):
            parse_config([])


class StartupTest(IsolatedAsyncioTestCase):
    async def test_bind_failure_exits(self):
        async with FakeDirectoryServer() as server:
            config = Config(
                ldap_url=server.url, bind_dn=BIND_DN, bind_password="wrong"
            )
            self.assertEqual(await _server_main(config), 1)

    async def test_connect_failure_exits(self):
        async with FakeDirectoryServer() as server:
            url = server.url
        self.assertEqual(await _server_main(Config(ldap_url=url)), 1)

    async def test_connection_lost_exits(self):
        async with FakeDirectoryServer() as server:

            async def serve(uvicorn_server: uvicorn.Server, sockets=None):
                server.drop()
                while not uvicorn_server.should_exit:
                    await asyncio.sleep(0.01)

            config = Config(
                ldap_url=server.url, bind_dn=BIND_DN, bind_password=PASSWORD
            )
            with mock.patch.object(uvicorn.Server, "serve", serve):
                exit_code = await asyncio.wait_for(_server_main(config), 5)
        self.assertEqual(exit_code, 1)
