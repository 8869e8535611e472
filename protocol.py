# protocol.py
# Request grammar shared by nodes and clients.
# Fields are separated by "|", key:value pairs by ":".
from typing import Dict, Iterable, List, Optional, Tuple

INSERT = "Insert"
DELETE = "Delete"
SEARCH = "Search"
INSERT_SERVER = "Insert_Server"
DELETE_SERVER = "Delete_Server"
SEARCH_SERVER = "Search_Server"
JOIN_REQUEST = "Join_Request"
SEND_KEYS = "Send_Keys"
FIND_PREDECESSOR = "Find_Predecessor"
FIND_SUCCESSOR = "Find_Successor"
GET_SUCCESSOR = "Get_Successor"
GET_PREDECESSOR = "Get_Predecessor"
GET_ID = "Get_Id"
GET_FINGER_TABLE = "Get_Finger_Table"
GET_DATA_STORE = "Get_Data_Store"
GET_INFO = "Get_Info"
NOTIFY = "Notify"

FIELD_SEP = "|"
PAIR_SEP = ":"

NONE = "None"
NOT_FOUND = "NOT FOUND"
DONE = "Done"
INSERTED = "Inserted"
DELETED = "Deleted"


def format_request(operation: str, *args: object) -> str:
    return FIELD_SEP.join([operation] + [str(a) for a in args])


def parse_request(line: str) -> Tuple[str, List[str]]:
    parts = line.strip().split(FIELD_SEP)
    return parts[0], parts[1:]


def split_pair(text: str) -> Tuple[str, str]:
    """
    Split "key:value". Both parts must be non-empty and free of ":" so the pair
    survives the Send_Keys payload unchanged; raises ValueError otherwise.
    """
    key, sep, value = text.partition(PAIR_SEP)
    if not sep or not key or not value:
        raise ValueError(f"expected key:value, got {text!r}")
    if PAIR_SEP in value:
        raise ValueError(f"value may not contain {PAIR_SEP!r}: {text!r}")
    return key, value


def encode_pairs(items: Iterable[Tuple[str, str]]) -> str:
    """Send_Keys payload: "k|v:k|v:" """
    return "".join(f"{k}{FIELD_SEP}{v}{PAIR_SEP}" for k, v in items)


def decode_pairs(payload: str) -> Tuple[Dict[str, str], List[str]]:
    """Returns the decoded pairs and any chunks that were not "k|v"."""
    out: Dict[str, str] = {}
    rejected: List[str] = []
    for chunk in payload.split(PAIR_SEP):
        if not chunk:
            continue
        parts = chunk.split(FIELD_SEP)
        if len(parts) < 2:
            rejected.append(chunk)
            continue
        out[parts[0]] = parts[1]
    return out, rejected


def parse_info(text: str) -> Dict[str, Optional[str]]:
    """Get_Info reply "ip/port/id/predId/succId" as a dict; "None" maps to None."""
    fields = text.strip().split("/")
    if len(fields) != 5:
        raise ValueError(f"malformed info reply {text!r}")
    names = ("ip", "port", "id", "predecessor", "successor")
    return {name: (None if value == NONE else value) for name, value in zip(names, fields)}


def parse_finger_table(text: str) -> List[Tuple[int, int, Optional[int]]]:
    """Rows of a Get_Finger_Table reply as (index, start, successor id)."""
    rows: List[Tuple[int, int, Optional[int]]] = []
    for line in text.splitlines():
        words = line.split()
        # Entry: <i> Interval start: <s> Successor: <id>
        if len(words) != 7 or words[0] != "Entry:":
            continue
        succ = None if words[6] == NONE else int(words[6])
        rows.append((int(words[1]), int(words[4]), succ))
    return rows
