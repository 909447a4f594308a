import socket

from utils.port_utils import check_port_availability, get_process_using_port, is_port_in_use


def test_listening_port_is_in_use():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        s.listen()
        port = s.getsockname()[1]

        assert is_port_in_use(port, "127.0.0.1") is True

        available, message = check_port_availability(port, "127.0.0.1")
        assert available is False
        assert str(port) in message


def test_released_port_is_free():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]

    assert is_port_in_use(port, "127.0.0.1") is False
    assert check_port_availability(port, "127.0.0.1") == (True, "Port is free")


def test_no_process_on_unused_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]

    assert get_process_using_port(port) is None
