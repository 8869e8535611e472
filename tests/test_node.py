import asyncio

import config
import protocol
from network import PeerRef, RPCClient, RPCServer
from node import Node
from utils import hash_key, in_interval

from .helpers import get_free_port

HOST = "127.0.0.1"
QUIET = 3600.0  # maintenance loops run once at start, tests drive later rounds


def make_node(bootstrap: Node | None = None, m: int = 16) -> Node:
    boot = bootstrap.info if bootstrap is not None else None
    return Node(
        HOST,
        get_free_port(),
        boot,
        m=m,
        stabilize_interval=QUIET,
        fix_fingers_interval=QUIET,
        rpc_timeout=5.0,
    )


async def stabilize_all(nodes, rounds: int = 3) -> None:
    for _ in range(rounds):
        for n in nodes:
            await n.stabilize()


async def fix_all_fingers(nodes) -> None:
    for n in nodes:
        for i in range(1, n.m):
            await n.fix_fingers(i)


def ring_walk(start: Node, by_info) -> list:
    seen = [start]
    current = start
    while True:
        current = by_info[current.successor]
        if current is start:
            return seen
        assert current not in seen, "successor chain revisits a node"
        seen.append(current)


def test_node_single_startup_points_at_itself():
    async def scenario():
        node = Node(HOST, get_free_port())
        await node.start()
        try:
            assert node.successor == node.info
            assert node.predecessor == node.info
            assert node.fingers.get(0) == node.info
            assert node.predecessor.id == node.successor.id == node.id
            assert await node.find_successor(node.id) == node.info
            assert await node.find_successor((node.id + 5) % 256) == node.info
        finally:
            await node.stop()

    asyncio.run(scenario())


def test_insert_search_delete_over_the_wire():
    async def scenario():
        node = Node(HOST, get_free_port())
        await node.start()
        client = RPCClient()
        try:
            resp = await client.call(node.info, "Insert|alpha:1")
            assert resp.startswith(f"Inserted at node id {node.id}")
            assert await client.call(node.info, "Search|alpha") == "1"
            resp = await client.call(node.info, "Delete|alpha")
            assert resp.startswith("Deleted")
            assert await client.call(node.info, "Search|alpha") == protocol.NOT_FOUND
            # deleting again is harmless
            assert (await client.call(node.info, "Delete|alpha")).startswith("Deleted")
            assert await client.call(node.info, "Search|alpha") == protocol.NOT_FOUND
        finally:
            await node.stop()

    asyncio.run(scenario())


def test_query_operations():
    async def scenario():
        node = Node(HOST, get_free_port())
        await node.start()
        client = RPCClient()
        try:
            assert await client.call(node.info, "Get_Id") == str(node.id)
            assert await client.call(node.info, "Get_Successor") == str(node.info)
            assert await client.call(node.info, "Get_Predecessor") == str(node.info)
            assert await client.call(node.info, f"Find_Successor|{node.id}") == str(node.info)
            info = protocol.parse_info(await client.call(node.info, "Get_Info"))
            assert info["id"] == info["predecessor"] == info["successor"] == str(node.id)
            table = await client.call(node.info, "Get_Finger_Table")
            rows = protocol.parse_finger_table(table)
            assert len(rows) == config.M
            assert rows[0][2] == node.id
            await client.call(node.info, "Insert_Server|k:v")
            assert await client.call(node.info, "Get_Data_Store") == '{"k": "v"}'
            assert await client.call(node.info, "Search_Server|missing") == protocol.NOT_FOUND
        finally:
            await node.stop()

    asyncio.run(scenario())


def test_dispatcher_defaults():
    async def scenario():
        node = Node(HOST, get_free_port())
        assert await node.handle_request("Frobnicate|x") == protocol.DONE
        assert await node.handle_request("") == protocol.DONE
        assert (await node.handle_request("Insert|no-separator")).startswith("Error")
        assert (await node.handle_request("Find_Successor|abc")).startswith("Error")
        assert (await node.handle_request("Notify|1")).startswith("Error")
        # an empty value would read back as an unreachable owner
        assert (await node.handle_request("Insert_Server|k:")).startswith("Error")
        assert (await node.handle_request("Insert_Server|k:a|b")).startswith("Error")
        assert "k" not in node.store

    asyncio.run(scenario())


def test_values_that_would_not_survive_migration_are_rejected():
    async def scenario():
        node = make_node()
        await node.start()
        client = RPCClient()
        try:
            resp = await client.call(node.info, "Insert|k:a:b")
            assert resp.startswith("Error: malformed Insert request")
            assert (await node.insert_key("k", "a:b")).startswith("Error inserting key")
            assert (await node.insert_key("k", "")).startswith("Error inserting key")
            assert (await node.insert_key("k", "a|b")).startswith("Error inserting key")
            assert "k" not in node.store
            assert await client.call(node.info, "Search|k") == protocol.NOT_FOUND
        finally:
            await node.stop()

    asyncio.run(scenario())


def test_two_node_ring_converges():
    async def scenario():
        a = make_node(m=config.M)
        await a.start()
        b = make_node(a, m=config.M)
        await b.start()
        client = RPCClient()
        try:
            await stabilize_all([b, a], rounds=2)
            if a.id == b.id:
                return  # 1-in-256 collision: nothing meaningful to order
            assert await client.call(a.info, "Get_Successor") == str(b.info)
            assert await client.call(a.info, "Get_Predecessor") == str(b.info)
            assert await client.call(b.info, "Get_Successor") == str(a.info)
            assert await client.call(b.info, "Get_Predecessor") == str(a.info)
        finally:
            await b.stop()
            await a.stop()

    asyncio.run(scenario())


def test_join_migrates_keys():
    async def scenario():
        a = make_node()
        await a.start()
        keys = [f"key-{i}" for i in range(40)]
        for k in keys:
            await a.insert_key(k, f"v{k}")
        assert len(a.store) == len(keys)

        b = make_node(a)
        await b.start()
        try:
            if a.id == b.id:
                return  # identical ids own the same arc; nothing migrates
            for k in keys:
                key_id = hash_key(k, b.m)
                on_b = in_interval(a.id, b.id, key_id, inclusive_end=True, m=b.m)
                assert (k in b.store) == on_b
                assert (k in a.store) != on_b
            assert len(a.store) + len(b.store) == len(keys)

            await stabilize_all([a, b])
            for k in keys:
                assert await a.search_key(k) == f"v{k}"
                assert await b.search_key(k) == f"v{k}"
        finally:
            await b.stop()
            await a.stop()

    asyncio.run(scenario())


def test_ring_converges_after_sequential_joins():
    async def scenario():
        first = make_node()
        await first.start()
        nodes = [first]
        try:
            for _ in range(5):
                n = make_node(first)
                await n.start()
                nodes.append(n)
                await stabilize_all(nodes)
            await fix_all_fingers(nodes)

            by_info = {n.info: n for n in nodes}
            for start in nodes:
                walk = ring_walk(start, by_info)
                assert len(walk) == len(nodes)
                ids = [n.id for n in walk]
                # increasing order up to one wrap past zero
                drops = sum(1 for x, y in zip(ids, ids[1:] + ids[:1]) if y < x)
                assert drops == 1
            for n in nodes:
                assert n.predecessor is not None
                assert by_info[n.predecessor].successor == n.info
        finally:
            for n in reversed(nodes):
                await n.stop()

    asyncio.run(scenario())


def test_key_routing_is_deterministic():
    async def scenario():
        first = make_node()
        await first.start()
        nodes = [first]
        try:
            for _ in range(4):
                n = make_node(first)
                await n.start()
                nodes.append(n)
                await stabilize_all(nodes)
            await fix_all_fingers(nodes)

            ring = sorted(nodes, key=lambda n: n.id)

            def owner_of(key_id: int) -> Node:
                for n in ring:
                    if n.id >= key_id:
                        return n
                return ring[0]

            for i in range(25):
                key = f"item-{i}"
                writer = nodes[i % len(nodes)]
                reader = nodes[(i + 2) % len(nodes)]
                resp = await writer.insert_key(key, str(i))
                key_id = hash_key(key, writer.m)
                expected = owner_of(key_id)
                assert resp.startswith(f"Inserted at node id {expected.id} ")
                assert expected.store.lookup(key) == str(i)
                assert await reader.find_successor(key_id) == expected.info
                assert await reader.search_key(key) == str(i)

            await nodes[1].delete_key("item-3")
            assert await nodes[4].search_key("item-3") == protocol.NOT_FOUND
        finally:
            for n in reversed(nodes):
                await n.stop()

    asyncio.run(scenario())


def test_malformed_peer_reference_is_reported():
    async def scenario():
        async def garbage(line, peer):
            return "garbage"

        fake_port = get_free_port()
        fake_server = RPCServer(HOST, fake_port, garbage)
        await fake_server.start()
        node = make_node()
        await node.start()
        try:
            fake = PeerRef.of(HOST, fake_port, node.m)
            node.successor = fake
            # a key beyond the fake successor has to be forwarded to it
            key = next(
                k for k in (f"routed-{i}" for i in range(1000))
                if hash_key(k, node.m) != node.id
                and not in_interval(node.id, fake.id, hash_key(k, node.m), inclusive_end=True, m=node.m)
            )
            resp = await node.insert_key(key, "x")
            assert resp.startswith("Error inserting key")
            assert "garbage" in resp
            assert (await node.search_key(key)).startswith("Error searching key")
            assert key not in node.store
        finally:
            await node.stop()
            await fake_server.stop()

    asyncio.run(scenario())


def test_join_with_unreachable_bootstrap_fails():
    async def scenario():
        ghost = PeerRef.of(HOST, get_free_port())
        node = Node(HOST, get_free_port(), ghost, rpc_timeout=2.0)
        try:
            await node.start()
        except RuntimeError as e:
            assert "join failed" in str(e)
        else:
            await node.stop()
            raise AssertionError("join against a dead bootstrap succeeded")

    asyncio.run(scenario())


def test_hop_limit_bounds_lookups():
    async def scenario():
        a = make_node()
        await a.start()
        b = make_node(a)
        await b.start()
        c = make_node(a)
        await c.start()
        nodes = [a, b, c]
        try:
            await stabilize_all(nodes)
            # target well past the successor forces at least one forward
            target = (a.successor.id + 1) % (1 << a.m)
            if in_interval(a.id, a.successor.id, target, inclusive_end=True, m=a.m):
                return
            resp = await a.handle_request(f"Find_Predecessor|{target}|0")
            assert resp.startswith("Error")
        finally:
            for n in reversed(nodes):
                await n.stop()

    asyncio.run(scenario())


def test_notify_adopts_closer_predecessor():
    async def scenario():
        node = Node(HOST, get_free_port(), m=8)
        node.successor = node.info
        node.predecessor = None
        far = PeerRef("10.0.0.1", 1, (node.id + 100) % 256)
        near = PeerRef("10.0.0.2", 2, (node.id - 3) % 256)
        await node.notify(far)
        assert node.predecessor == far
        assert node.successor == far
        await node.notify(near)
        assert node.predecessor == near
        # a candidate outside (pred, self) is ignored
        await node.notify(far)
        assert node.predecessor == near
        await node.notify(node.info)
        assert node.predecessor == near

    asyncio.run(scenario())
