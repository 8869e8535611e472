# dump_store.py
import asyncio, json, sys
import protocol
from network import PeerRef, RPCClient

async def dump(port):
    client = RPCClient()
    node = PeerRef.of("127.0.0.1", port)
    reply = await client.call(node, protocol.GET_DATA_STORE, timeout=3.0)
    if not reply:
        print("Error: node unreachable")
        return
    try:
        print(json.dumps(json.loads(reply), indent=2, sort_keys=True))
    except ValueError:
        print(reply)

if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: python dump_store.py <port>")
    else:
        asyncio.run(dump(int(sys.argv[1])))
