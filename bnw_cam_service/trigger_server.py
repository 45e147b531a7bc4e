import json
import logging
import socket
import threading
from typing import Callable


class TriggerServer(threading.Thread):
    """
    One-line TCP command surface: a client connects, sends a command, reads the reply.
    `press` goes through the same gate as the hardware button.
    """

    def __init__(self, port: int, callback: Callable[[str], object], host: str = "") -> None:
        super().__init__(daemon=True, name="trigger-server")
        self.port = port
        self.host = host
        self.callback = callback
        self.sock = socket.socket()
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind((self.host, self.port))
        self.sock.listen(5)
        # resolved port when 0 was requested
        self.port = self.sock.getsockname()[1]
        self._stopped = threading.Event()

    def handle(self, conn: socket.socket) -> None:
        conn.settimeout(5)
        cmd = conn.recv(1024).decode(errors="replace").strip()
        try:
            response = self.callback(cmd)
        except Exception as e:
            logging.error("Trigger command %r failed: %s", cmd, e)
            response = f"ERROR: {e}"
        if not isinstance(response, str):
            response = json.dumps(response, indent=2)
        conn.sendall((response + "\n").encode())

    def run(self) -> None:
        logging.info("Trigger server listening on port %d", self.port)
        while not self._stopped.is_set():
            try:
                conn, _ = self.sock.accept()
            except OSError:
                break
            try:
                self.handle(conn)
            except OSError as e:
                logging.warning("Trigger client error: %s", e)
            finally:
                conn.close()

    def stop(self) -> None:
        self._stopped.set()
        try:
            # unblocks accept() on Linux
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
