# ring_status.py
import asyncio
import sys

import protocol
from network import PeerRef, RPCClient


async def show_ring(ports):
    client = RPCClient()
    for p in ports:
        node = PeerRef.of("127.0.0.1", p)
        reply = await client.call(node, protocol.GET_INFO, timeout=2.0)
        if not reply:
            print(f"{p}: UNREACHABLE")
            continue
        try:
            info = protocol.parse_info(reply)
        except ValueError as e:
            print(f"{p}: BAD REPLY ({e})")
            continue

        succ_ref = await client.call(node, protocol.GET_SUCCESSOR, timeout=2.0)
        pred_ref = await client.call(node, protocol.GET_PREDECESSOR, timeout=2.0)
        print(
            f"Node(port={p}) id={info['id']} "
            f"succ={info['successor']} ({succ_ref or '?'}) pred={info['predecessor']} ({pred_ref or '?'})"
        )

if __name__ == "__main__":
    # ports as command-line args or default 6000..6003
    args = sys.argv[1:]
    if args:
        ports = [int(x) for x in args]
    else:
        ports = [6000,6001,6002,6003]
    asyncio.run(show_ring(ports))
