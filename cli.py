# cli.py
import argparse
import asyncio
import json
import logging
import sys

from prettytable import PrettyTable, ALL

import config
import protocol
from network import PeerRef, RPCClient
from node import Node

logger = logging.getLogger("chord.cli")


async def start_node(host: str, port: int, bootstrap: str | None):
    boot = None
    if bootstrap:
        h, p = bootstrap.split(":")
        boot = (h, int(p))

    node = Node.from_config(config.NodeConfig(host=host, port=port, bootstrap=boot))
    await node.start()
    print(f"Node started: {node.info_str()}")
    try:
        while True:
            await asyncio.sleep(5)
            print(node.info_str())
    finally:
        await node.stop()


async def send(host: str, port: int, line: str) -> str:
    client = RPCClient()
    return await client.call(PeerRef.of(host, port), line, timeout=config.RPC_TIMEOUT)


def finger_table(text: str) -> PrettyTable:
    tab = PrettyTable(["Entry", "Interval start", "Successor"])
    for index, start, succ in protocol.parse_finger_table(text):
        tab.add_row([index, start, protocol.NONE if succ is None else succ])
    return tab


def data_store(text: str) -> PrettyTable:
    tab = PrettyTable(["Key", "Value"])
    tab.add_rows(sorted(json.loads(text).items()))
    tab.hrules = ALL
    return tab


def node_info(text: str) -> PrettyTable:
    info = protocol.parse_info(text)
    tab = PrettyTable(["IP", "Port", "ID", "Predecessor", "Successor"])
    tab.add_row([info[name] or protocol.NONE for name in ("ip", "port", "id", "predecessor", "successor")])
    return tab


def _render(cmd: str, reply: str) -> str:
    if not reply:
        return ""
    if reply.startswith("Error"):
        return reply
    try:
        if cmd == "fingers":
            return finger_table(reply).get_string()
        if cmd == "store":
            return data_store(reply).get_string()
        if cmd == "info":
            return node_info(reply).get_string()
    except ValueError as e:
        logger.warning("could not render %s reply: %s", cmd, e)
    if cmd == "search":
        return f"The value corresponding to the key is : {reply}"
    return reply


def _request_line(args) -> str:
    if args.cmd == "insert":
        return protocol.format_request(protocol.INSERT, f"{args.key}:{args.value}")
    if args.cmd == "search":
        return protocol.format_request(protocol.SEARCH, args.key)
    if args.cmd == "delete":
        return protocol.format_request(protocol.DELETE, args.key)
    return {
        "fingers": protocol.GET_FINGER_TABLE,
        "store": protocol.GET_DATA_STORE,
        "info": protocol.GET_INFO,
    }[args.cmd]


def main():
    parser = argparse.ArgumentParser(description="Chord DHT CLI")
    sub = parser.add_subparsers(dest="cmd")

    p1 = sub.add_parser("start", help="Start a node")
    p1.add_argument("--host", required=True)
    p1.add_argument("--port", type=int, required=True)
    p1.add_argument("--bootstrap", help="Existing ring member host:port")

    for name, help_text in (
        ("insert", "Store a key/value pair"),
        ("search", "Look up a key"),
        ("delete", "Remove a key"),
        ("fingers", "Show a node's finger table"),
        ("store", "Show a node's local data store"),
        ("info", "Show a node's id and neighbours"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--host", required=True)
        p.add_argument("--port", type=int, required=True)
        if name in ("insert", "search", "delete"):
            p.add_argument("--key", required=True)
        if name == "insert":
            p.add_argument("--value", required=True)

    args = parser.parse_args()
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    if args.cmd == "start":
        try:
            asyncio.run(start_node(args.host, args.port, args.bootstrap))
        except KeyboardInterrupt:
            print("Shutting down node...")
    elif args.cmd:
        reply = asyncio.run(send(args.host, args.port, _request_line(args)))
        if not reply:
            print(f"[-] No response from {args.host}:{args.port}", file=sys.stderr)
            sys.exit(1)
        print(_render(args.cmd, reply))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
