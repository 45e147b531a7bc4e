#!/usr/bin/env python3
import socket
import sys

HOST = "raspberrypi"  # Replace with your Pi's hostname or IP
PORT = 9999


def send_command(cmd: str, host: str = HOST, port: int = PORT, timeout: float = 120.0) -> str:
    """Send one command to the trigger server and return its reply."""
    with socket.create_connection((host, port), timeout=timeout) as s:
        s.sendall((cmd + "\n").encode())
        chunks = []
        while True:
            chunk = s.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks).decode().rstrip("\n")


if __name__ == "__main__":
    # e.g. python3 client.py press | status | latest | list | health | set encode.budget_bytes 90000
    command = " ".join(sys.argv[1:]) or "status"
    print(send_command(command))
