import socket

from rainbowd.ports import allocate_port


def test_allocated_port_is_bindable():
    port = allocate_port("127.0.0.1")
    assert 1024 <= port <= 65535
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))
