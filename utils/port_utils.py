# utils/port_utils.py
import socket
import psutil
import logging
from typing import Optional, Dict

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = '') -> bool:
    """Checks whether the port can still be bound"""
    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return False
        except OSError:
            return True


def get_process_using_port(port: int) -> Optional[Dict]:
    """Returns the process listening on the port, if it can be found"""
    try:
        for conn in psutil.net_connections(kind='inet'):
            try:
                if (conn.laddr and conn.laddr.port == port and
                        conn.status == psutil.CONN_LISTEN and conn.pid):

                    process = psutil.Process(conn.pid)
                    if process.is_running():
                        return {
                            'name': process.name(),
                            'pid': process.pid,
                            'username': process.username(),
                        }
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
    except psutil.Error as e:
        logger.debug(f"Unable to look up the process on port {port}: {e}")
    return None


def check_port_availability(port: int, host: str = '') -> tuple[bool, str]:
    """Checks the port and describes what holds it"""
    if not is_port_in_use(port, host):
        return True, "Port is free"

    process_info = get_process_using_port(port)
    if process_info:
        message = (
            f"Port {port} is used by {process_info['name']} "
            f"(PID: {process_info['pid']})"
        )
        if process_info['username']:
            message += f", user: {process_info['username']}"
        return False, message

    return False, f"Port {port} is in use"
