import uuid

import zmq


def test_ping_pong(zmq_client):
    msg_id = str(uuid.uuid4())
    zmq_client.send_json({"cmd": "ping", "id": msg_id})
    resp = zmq_client.recv_json()
    assert resp["id"] == msg_id
    assert resp["status"] == "alive"
    assert isinstance(resp["uptime_s"], float)


def test_ping_socket(zmq_ping_client):
    resp = zmq_ping_client.request({"cmd": "ping", "id": "p1"})
    assert resp["id"] == "p1"
    assert resp["status"] == "alive"


def test_unknown_command(zmq_client):
    msg_id = str(uuid.uuid4())
    zmq_client.send_json({"cmd": "foobar", "id": msg_id})
    resp = zmq_client.recv_json()
    assert resp["id"] == msg_id
    assert resp["ok"] is False
    assert "unknown" in resp["error"]


def test_invalid_json_rejected(zmq_server):
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    sock.send(b"{not json")
    resp = sock.recv_json()
    assert resp["ok"] is False
    assert "Invalid message format" in resp["error"]
    sock.close()
    ctx.term()

