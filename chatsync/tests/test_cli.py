import io
import json

from chatsync.cli import _load_frames, main, simulate

FRAMES = [
    {"t": "track", "body": {"user_ids": ["42"]}},
    {"v": 1, "t": "presence_delta", "body": {"userId": 42, "isOnline": True}},
    {"v": 1, "t": "message_incoming", "body": {"id": 1, "senderId": 42, "created_at": 1_700_000_000}},
    {"v": 1, "t": "typing_start", "body": {"chat_kind": "group", "chat_id": 7, "user_id": 9}},
    {"t": "tick", "body": {"ms": 1600}},
    {"v": 1, "t": "call_incoming", "body": {"call_id": "c1", "from_user_id": 9}},
    {"v": 1, "t": "message_incoming", "body": {"content": "no id"}},
]


def test_load_frames_accepts_array_or_lines():
    array_buffer = io.StringIO(json.dumps([{"t": "tick"}]))
    ndjson_buffer = io.StringIO("\n".join(['{"t": "one"}', '{"t": "two"}']))

    assert _load_frames(array_buffer) == [{"t": "tick"}]
    assert _load_frames(ndjson_buffer) == [{"t": "one"}, {"t": "two"}]
    assert _load_frames(io.StringIO("  ")) == []


def test_simulate_prints_state_changes():
    buffer = io.StringIO()

    dropped = simulate(FRAMES, buffer)

    lines = [json.loads(line) for line in buffer.getvalue().splitlines()]
    assert dropped == 1
    assert lines == [
        {"t": "presence", "changed": {"42": True}},
        {"t": "chat_list", "rows": ["personal-42"], "unread": {"personal-42": 1}},
        {"t": "typing", "chat": "group-7", "users": ["9"]},
        {"t": "typing", "chat": "group-7", "users": []},
        {"t": "call", "call_id": "c1", "state": "ringing_incoming"},
    ]


def test_main_simulate_reads_file(tmp_path):
    path = tmp_path / "frames.ndjson"
    path.write_text("\n".join(json.dumps(frame) for frame in FRAMES[:3]))
    buffer = io.StringIO()

    exit_code = main(["simulate", "--file", str(path), "--identity", "alice"], output=buffer)

    assert exit_code == 0
    lines = [json.loads(line) for line in buffer.getvalue().splitlines()]
    assert lines == [
        {"t": "presence", "changed": {"42": True}},
        {"t": "chat_list", "rows": ["personal-42"], "unread": {"personal-42": 1}},
    ]
