# network.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

import config
from utils import hash_key

logger = logging.getLogger("chord.network")

# A tiny line-oriented TCP RPC server + client for our DHT
# Requests: one newline-terminated line "Operation|arg|arg"
# Responses: one text block, then the server closes the connection

INVALID_IP = "Invalid IP"
INVALID_PORT = "Invalid Port"


class RoutingError(RuntimeError):
    """A lookup or peer exchange produced no usable peer reference."""


@dataclass(frozen=True)
class PeerRef:
    host: str
    port: int
    id: int

    @classmethod
    def of(cls, host: str, port: int, m: int = config.M) -> "PeerRef":
        return cls(host, int(port), hash_key(f"{host}|{port}", m))

    @property
    def address(self) -> str:
        # host:port form, safe to embed in replies that must not contain "|"
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}|{self.port}"


def get_ip_port(text: str) -> Tuple[str, str]:
    parts = text.strip().split("|")
    if len(parts) >= 2:
        return parts[0], parts[1]
    return INVALID_IP, INVALID_PORT


def parse_peer_ref(text: str, m: int = config.M) -> PeerRef:
    """
    Turn an "ip|port" reply into a PeerRef. Raises RoutingError on anything else.
    """
    ip, port = get_ip_port(text)
    if (ip, port) == (INVALID_IP, INVALID_PORT):
        raise RoutingError(f"invalid peer reference {text.strip()!r}")
    try:
        return PeerRef.of(ip, int(port), m)
    except ValueError:
        raise RoutingError(f"invalid port in peer reference {text.strip()!r}")


# RPC Server ---------------------------------------------------------
class RPCServer:
    def __init__(self, host: str, port: int, handler: Callable[[str, Tuple[str, int]], Awaitable[str]]):
        self.host = host
        self.port = port
        self._handler = handler
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._client_connected, self.host, self.port)
        logger.debug("RPCServer listening on %s:%s", self.host, self.port)

    async def _client_connected(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername")
        try:
            try:
                data = await reader.readline()
            except ValueError:
                # line exceeded the stream limit; skip what is left of it before replying
                await self._discard_line(reader)
                writer.write(b"Error: request line too long\n")
                await writer.drain()
                return
            if not data:
                return
            line = data.decode("utf-8", errors="replace").strip()
            try:
                out = await self._handler(line, peer)
            except Exception as e:
                logger.exception("handler failed for %r", line)
                out = f"Error: handler exception: {e}"
            writer.write((out + "\n").encode("utf-8"))
            await writer.drain()
        except ConnectionError as e:
            logger.debug("connection from %s dropped: %s", peer, e)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _discard_line(self, reader: asyncio.StreamReader) -> None:
        async def drain_input() -> None:
            while True:
                chunk = await reader.read(65536)
                if not chunk or b"\n" in chunk:
                    return
        try:
            await asyncio.wait_for(drain_input(), timeout=1.0)
        except asyncio.TimeoutError:
            pass

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None


# RPC Client ---------------------------------------------------------
class RPCClient:
    async def call(self, peer: PeerRef, line: str, timeout: Optional[float] = config.RPC_TIMEOUT) -> str:
        """
        One-shot request. Returns the reply text, or "" when the peer could not be reached.
        """
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(peer.host, peer.port), timeout=timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("connect-failed %s: %s", peer.address, e)
            return ""

        try:
            writer.write((line + "\n").encode("utf-8"))
            await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()
            data = await asyncio.wait_for(reader.read(), timeout=timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("no response from %s to %r: %s", peer.address, line, e)
            return ""
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        return data.decode("utf-8", errors="replace").rstrip("\r\n")
