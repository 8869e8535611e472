# node.py
import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import config
import protocol
from network import PeerRef, RPCClient, RPCServer, RoutingError, parse_peer_ref
from utils import forward_distance, hash_key, in_interval

logger = logging.getLogger("chord")


# ---- Routing table (fingers) ----
@dataclass
class Finger:
    start: int
    node: Optional[PeerRef] = None


class FingerTable:
    def __init__(self, owner_id: int, m: int = config.M):
        self.owner_id = owner_id
        self.m = m
        # entry i covers owner + 2^i; entry 0 is the immediate successor
        self.entries: List[Finger] = [Finger((owner_id + (1 << i)) % (1 << m)) for i in range(m)]

    def start(self, i: int) -> int:
        return self.entries[i].start

    def get(self, i: int) -> Optional[PeerRef]:
        return self.entries[i].node

    def set(self, i: int, node: Optional[PeerRef]) -> None:
        self.entries[i].node = node

    def closest_preceding_node(self, search_id: int) -> Optional[PeerRef]:
        """
        The resolved finger strictly inside (owner, search_id) that lands nearest to search_id.
        """
        best: Optional[PeerRef] = None
        best_distance = (1 << self.m) + 1
        for finger in reversed(self.entries):
            node = finger.node
            if node is None:
                continue
            if not in_interval(self.owner_id, search_id, node.id, m=self.m):
                continue
            distance = forward_distance(node.id, search_id, self.m)
            if distance < best_distance:
                best, best_distance = node, distance
        return best

    def rows(self) -> List[Tuple[int, int, Optional[PeerRef]]]:
        return [(i, f.start, f.node) for i, f in enumerate(self.entries)]

    def describe(self) -> str:
        lines = []
        for i, start, node in self.rows():
            succ = protocol.NONE if node is None else str(node.id)
            lines.append(f"Entry: {i} Interval start: {start} Successor: {succ}")
        return "\n".join(lines)


# ---- Local storage ----
class DataStore:
    def __init__(self, m: int = config.M):
        self.m = m
        self._data: Dict[str, str] = {}

    def insert(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def lookup(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def extract_for(self, joining_id: int, owner_id: int) -> Dict[str, str]:
        """
        Remove and return every key the joining node is now responsible for,
        i.e. whose hash reaches joining_id before owner_id walking clockwise.
        """
        taken: Dict[str, str] = {}
        for key in list(self._data.keys()):
            key_id = hash_key(key, self.m)
            if forward_distance(key_id, joining_id, self.m) < forward_distance(key_id, owner_id, self.m):
                taken[key] = self._data.pop(key)
        return taken

    def merge(self, items: Dict[str, str]) -> None:
        self._data.update(items)

    def items(self) -> Dict[str, str]:
        return dict(self._data)

    def dump(self) -> str:
        return json.dumps(self._data, sort_keys=True)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data


# ---- Node class ----
class Node:
    def __init__(
        self,
        host: str,
        port: int,
        bootstrap: Optional[PeerRef] = None,
        *,
        m: int = config.M,
        stabilize_interval: float = config.STABILIZE_INTERVAL,
        fix_fingers_interval: float = config.FIX_FINGERS_INTERVAL,
        rpc_timeout: float = config.RPC_TIMEOUT,
        max_hops: int = config.MAX_HOPS,
    ):
        self.host = host
        self.port = port
        self.m = m
        self.info = PeerRef.of(host, port, m)
        self.id = self.info.id

        self.predecessor: Optional[PeerRef] = None
        self.fingers = FingerTable(self.id, m)
        self.store = DataStore(m)

        self.stabilize_interval = stabilize_interval
        self.fix_fingers_interval = fix_fingers_interval
        self.rpc_timeout = rpc_timeout
        self.max_hops = max_hops

        # network
        self.rpc_server: Optional[RPCServer] = None
        self.rpc_client = RPCClient()

        # guards successor/predecessor/finger read-modify-write; never held across a call
        self._lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

        self.bootstrap = bootstrap

        self._operations: Dict[str, Callable[[List[str]], Awaitable[str]]] = {
            protocol.INSERT: self._op_insert,
            protocol.DELETE: self._op_delete,
            protocol.SEARCH: self._op_search,
            protocol.INSERT_SERVER: self._op_insert_server,
            protocol.DELETE_SERVER: self._op_delete_server,
            protocol.SEARCH_SERVER: self._op_search_server,
            protocol.JOIN_REQUEST: self._op_join_request,
            protocol.SEND_KEYS: self._op_send_keys,
            protocol.FIND_PREDECESSOR: self._op_find_predecessor,
            protocol.FIND_SUCCESSOR: self._op_find_successor,
            protocol.GET_SUCCESSOR: self._op_get_successor,
            protocol.GET_PREDECESSOR: self._op_get_predecessor,
            protocol.GET_ID: self._op_get_id,
            protocol.GET_FINGER_TABLE: self._op_get_finger_table,
            protocol.GET_DATA_STORE: self._op_get_data_store,
            protocol.GET_INFO: self._op_get_info,
            protocol.NOTIFY: self._op_notify,
        }

    @classmethod
    def from_config(cls, cfg: config.NodeConfig) -> "Node":
        bootstrap = None
        if cfg.bootstrap is not None:
            bootstrap = PeerRef.of(cfg.bootstrap[0], cfg.bootstrap[1], cfg.m)
        return cls(
            cfg.host,
            cfg.port,
            bootstrap,
            m=cfg.m,
            stabilize_interval=cfg.stabilize_interval,
            fix_fingers_interval=cfg.fix_fingers_interval,
            rpc_timeout=cfg.rpc_timeout,
            max_hops=cfg.max_hops,
        )

    @property
    def successor(self) -> Optional[PeerRef]:
        return self.fingers.get(0)

    @successor.setter
    def successor(self, node: Optional[PeerRef]) -> None:
        self.fingers.set(0, node)

    # ---------------- network handler ----------------
    async def _rpc_handler(self, line: str, sender: tuple) -> str:
        logger.debug("node %s <- %s: %r", self.id, sender, line)
        return await self.handle_request(line)

    async def handle_request(self, line: str) -> str:
        operation, args = protocol.parse_request(line)
        handler = self._operations.get(operation)
        if handler is None:
            return protocol.DONE
        try:
            return await handler(args)
        except RoutingError as e:
            logger.warning("%s failed on node %s: %s", operation, self.id, e)
            return f"Error: {e}"
        except (IndexError, ValueError) as e:
            return f"Error: malformed {operation} request: {e}"

    async def _op_insert(self, args: List[str]) -> str:
        key, value = self._pair_arg(args)
        return await self.insert_key(key, value)

    async def _op_delete(self, args: List[str]) -> str:
        return await self.delete_key(args[0])

    async def _op_search(self, args: List[str]) -> str:
        return await self.search_key(args[0])

    async def _op_insert_server(self, args: List[str]) -> str:
        key, value = self._pair_arg(args)
        self.store.insert(key, value)
        return protocol.INSERTED

    async def _op_delete_server(self, args: List[str]) -> str:
        self.store.delete(args[0])
        return protocol.DELETED

    async def _op_search_server(self, args: List[str]) -> str:
        value = self.store.lookup(args[0])
        return protocol.NOT_FOUND if value is None else value

    async def _op_join_request(self, args: List[str]) -> str:
        return self._peer_text(await self.find_successor(int(args[0])))

    async def _op_send_keys(self, args: List[str]) -> str:
        return self.send_keys(int(args[0]))

    async def _op_find_predecessor(self, args: List[str]) -> str:
        hops_left = int(args[1]) if len(args) > 1 else None
        return self._peer_text(await self.find_predecessor(int(args[0]), hops_left))

    async def _op_find_successor(self, args: List[str]) -> str:
        return self._peer_text(await self.find_successor(int(args[0])))

    async def _op_get_successor(self, args: List[str]) -> str:
        return self._peer_text(self.successor)

    async def _op_get_predecessor(self, args: List[str]) -> str:
        return self._peer_text(self.predecessor)

    async def _op_get_id(self, args: List[str]) -> str:
        return str(self.id)

    async def _op_get_finger_table(self, args: List[str]) -> str:
        return self.fingers.describe()

    async def _op_get_data_store(self, args: List[str]) -> str:
        return self.store.dump()

    async def _op_get_info(self, args: List[str]) -> str:
        pred = protocol.NONE if self.predecessor is None else str(self.predecessor.id)
        succ = protocol.NONE if self.successor is None else str(self.successor.id)
        return f"{self.host}/{self.port}/{self.id}/{pred}/{succ}"

    async def _op_notify(self, args: List[str]) -> str:
        await self.notify(PeerRef(args[1], int(args[2]), int(args[0])))
        return protocol.DONE

    # ---------------- peer helpers ----------------
    @staticmethod
    def _pair_arg(args: List[str]) -> Tuple[str, str]:
        # a "|" inside the pair would have split it into extra fields
        if len(args) != 1:
            raise ValueError(f"expected a single key:value field, got {len(args)}")
        return protocol.split_pair(args[0])

    @staticmethod
    def _peer_text(node: Optional[PeerRef]) -> str:
        return protocol.NONE if node is None else str(node)

    def _peer_from_reply(self, reply: str) -> Optional[PeerRef]:
        """
        "" (unreachable) and "None" mean unresolved; anything else must be ip|port.
        """
        if not reply or reply == protocol.NONE:
            return None
        return parse_peer_ref(reply, self.m)

    async def _request(self, peer: PeerRef, line: str) -> str:
        # requests addressed to ourselves never touch the network
        if peer == self.info:
            return await self.handle_request(line)
        return await self.rpc_client.call(peer, line, timeout=self.rpc_timeout)

    # ---------------- startup / shutdown ----------------
    async def start(self) -> None:
        self.rpc_server = RPCServer(self.host, self.port, self._rpc_handler)
        await self.rpc_server.start()
        if self.bootstrap is None:
            # create single-node ring
            async with self._lock:
                self.successor = self.info
                self.predecessor = self.info
            logger.info("node %s created a new ring at %s", self.id, self.info.address)
        else:
            try:
                await self.join(self.bootstrap)
            except RoutingError as e:
                await self.rpc_server.stop()
                raise RuntimeError(f"join failed: {e}")

        # schedule maintenance tasks
        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self._stabilize_loop()))
        self._tasks.append(loop.create_task(self._fix_fingers_loop()))

    async def stop(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        for t in list(self._tasks):
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        if self.rpc_server:
            await self.rpc_server.stop()
            self.rpc_server = None

    # ---------------- join/find ----------------
    async def join(self, bootstrap: PeerRef) -> None:
        reply = await self.rpc_client.call(
            bootstrap, protocol.format_request(protocol.JOIN_REQUEST, self.id), timeout=self.rpc_timeout
        )
        succ = self._peer_from_reply(reply)
        if succ is None:
            raise RoutingError(f"bootstrap {bootstrap.address} returned no successor")
        async with self._lock:
            self.successor = succ
            self.predecessor = None
        logger.info("node %s joined via %s, successor=%s", self.id, bootstrap.address, succ.id)

        if succ.id == self.id:
            return
        payload = await self.rpc_client.call(
            succ, protocol.format_request(protocol.SEND_KEYS, self.id), timeout=self.rpc_timeout
        )
        if not payload:
            logger.info("node %s received no keys from successor %s", self.id, succ.id)
            return
        items, rejected = protocol.decode_pairs(payload)
        for chunk in rejected:
            logger.warning("node %s ignored invalid key-value pair %r", self.id, chunk)
        self.store.merge(items)
        logger.info("node %s took over %d keys from %s", self.id, len(items), succ.id)

    def send_keys(self, joining_id: int) -> str:
        taken = self.store.extract_for(joining_id, self.id)
        if taken:
            logger.info("node %s handing %d keys to joining node %s", self.id, len(taken), joining_id)
        return protocol.encode_pairs(taken.items())

    async def find_predecessor(self, id_: int, hops_left: Optional[int] = None) -> Optional[PeerRef]:
        """
        Walk the ring toward id_ until it falls in (current, current.successor].
        Each forward is a Find_Predecessor request to the next hop, bounded by hops_left.
        """
        if hops_left is None:
            hops_left = self.max_hops
        succ = self.successor
        if succ is None:
            return None
        if succ == self.info:
            return self.info
        if in_interval(self.id, succ.id, id_, inclusive_end=True, m=self.m):
            return self.info

        hop = self.fingers.closest_preceding_node(id_)
        if hop is None:
            return None
        if hops_left <= 0:
            raise RoutingError(f"lookup for {id_} exceeded the hop limit at node {self.id}")
        reply = await self._request(hop, protocol.format_request(protocol.FIND_PREDECESSOR, id_, hops_left - 1))
        return self._peer_from_reply(reply)

    async def find_successor(self, id_: int) -> Optional[PeerRef]:
        if id_ == self.id:
            return self.info
        pred = await self.find_predecessor(id_)
        if pred is None:
            return None
        if pred == self.info:
            return self.successor
        reply = await self._request(pred, protocol.GET_SUCCESSOR)
        return self._peer_from_reply(reply)

    async def _route(self, key_id: int) -> PeerRef:
        owner = await self.find_successor(key_id)
        if owner is None:
            raise RoutingError(f"no node resolved for id {key_id}")
        return owner

    # ---------------- maintenance loops ----------------
    async def _stabilize_loop(self):
        while True:
            try:
                await self.stabilize()
            except Exception as e:
                logger.warning("stabilize on node %s failed: %s", self.id, e)
            await asyncio.sleep(self.stabilize_interval)

    async def stabilize(self) -> None:
        """
        Ask successor for its predecessor x. If x is between self and successor, set successor=x.
        Then notify successor.
        """
        succ = self.successor
        if succ is None:
            return
        if succ == self.info:
            candidate = self.predecessor
        else:
            reply = await self.rpc_client.call(succ, protocol.GET_PREDECESSOR, timeout=self.rpc_timeout)
            if not reply:
                # no successor list to fall back on; retried next round
                logger.warning("node %s: successor %s unreachable", self.id, succ.address)
                return
            candidate = self._peer_from_reply(reply)

        if candidate is not None:
            async with self._lock:
                current = self.successor
                if current is not None and in_interval(self.id, current.id, candidate.id, m=self.m):
                    self.successor = candidate
                    logger.info("node %s adopted successor %s", self.id, candidate.id)

        succ = self.successor
        if succ is None or succ == self.info:
            return
        # notify successor that I might be its predecessor
        await self.rpc_client.call(
            succ,
            protocol.format_request(protocol.NOTIFY, self.id, self.host, self.port),
            timeout=self.rpc_timeout,
        )

    async def notify(self, candidate: PeerRef) -> None:
        """
        Called by other node saying "I might be your predecessor".
        If you have no predecessor or candidate is between your predecessor and you, update.
        """
        if candidate == self.info:
            return
        async with self._lock:
            pred = self.predecessor
            if pred is None or in_interval(pred.id, self.id, candidate.id, m=self.m):
                self.predecessor = candidate
                logger.info("node %s adopted predecessor %s", self.id, candidate.id)
            if self.successor == self.info:
                self.successor = candidate
                logger.info("node %s adopted successor %s", self.id, candidate.id)

    async def _fix_fingers_loop(self):
        while True:
            try:
                await self.fix_fingers()
            except Exception as e:
                logger.warning("fix_fingers on node %s failed: %s", self.id, e)
            await asyncio.sleep(self.fix_fingers_interval)

    async def fix_fingers(self, index: Optional[int] = None) -> None:
        """
        Recompute one finger: successor(self + 2^index). Finger 0 belongs to stabilize.
        """
        if index is None:
            if self.m < 2:
                return
            index = random.randint(1, self.m - 1)
        target = self.fingers.start(index)
        succ = await self.find_successor(target)
        if succ is None:
            logger.debug("node %s: finger %d unresolved, retrying next round", self.id, index)
            return
        async with self._lock:
            self.fingers.set(index, succ)

    # ---------------- DHT ops ----------------
    async def insert_key(self, key: str, value: str) -> str:
        try:
            self._pair_arg(f"{key}{protocol.PAIR_SEP}{value}".split(protocol.FIELD_SEP))
        except ValueError as e:
            return f"Error inserting key: {e}"
        key_id = hash_key(key, self.m)
        try:
            owner = await self._route(key_id)
            reply = await self._request(owner, protocol.format_request(protocol.INSERT_SERVER, f"{key}:{value}"))
            if not reply:
                raise RoutingError(f"owner {owner.address} unreachable")
        except RoutingError as e:
            logger.warning("insert of %r failed: %s", key, e)
            return f"Error inserting key: {e}"
        return f"Inserted at node id {owner.id} key was {key} key hash was {key_id}"

    async def delete_key(self, key: str) -> str:
        key_id = hash_key(key, self.m)
        try:
            owner = await self._route(key_id)
            reply = await self._request(owner, protocol.format_request(protocol.DELETE_SERVER, key))
            if not reply:
                raise RoutingError(f"owner {owner.address} unreachable")
        except RoutingError as e:
            logger.warning("delete of %r failed: %s", key, e)
            return f"Error deleting key: {e}"
        return f"Deleted at node id {owner.id} key was {key} key hash was {key_id}"

    async def search_key(self, key: str) -> str:
        key_id = hash_key(key, self.m)
        try:
            owner = await self._route(key_id)
            reply = await self._request(owner, protocol.format_request(protocol.SEARCH_SERVER, key))
            if not reply:
                raise RoutingError(f"owner {owner.address} unreachable")
        except RoutingError as e:
            logger.warning("search of %r failed: %s", key, e)
            return f"Error searching key: {e}"
        return reply

    # ---------------- debug / helpers ----------------
    def info_str(self) -> str:
        succ = self.successor.address if self.successor else "None"
        pred = self.predecessor.address if self.predecessor else "None"
        return f"Node {self.host}:{self.port} id={self.id} succ={succ} pred={pred} keys={len(self.store)}"
