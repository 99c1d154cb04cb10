"""
Brief: Stand-in for the dnscrypt-proxy binary used by proxy supervisor tests.

Inputs:
  - argv: -config <path>; listen_addresses is read from that file
  - FAKE_PROXY_MODE: listen (default), crash, hang

Outputs:
  - listen: accepts TCP connections and answers UDP A queries with 192.0.2.1
  - crash: prints a fatal message and exits 1
  - hang: stays alive without opening the listener
"""

import os
import re
import select
import socket
import sys
import time

from dnslib import QTYPE, RR, A, DNSRecord


def _listen_address(config_path):
    with open(config_path, "r", encoding="utf-8") as f:
        text = f.read()
    m = re.search(r"^listen_addresses\s*=\s*\['([^']+)'\]", text, re.MULTILINE)
    host, _, port = m.group(1).rpartition(":")
    return host, int(port)


def main(argv):
    config_path = argv[argv.index("-config") + 1]
    mode = os.environ.get("FAKE_PROXY_MODE", "listen")
    print(f"[NOTICE] fake proxy starting with {config_path}", flush=True)

    if mode == "crash":
        print("[FATAL] Unable to parse the stamp", flush=True)
        return 1
    if mode == "hang":
        while True:
            time.sleep(1)

    host, port = _listen_address(config_path)
    tcp = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    tcp.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    tcp.bind((host, port))
    tcp.listen(16)
    udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    udp.bind((host, port))
    print(f"[NOTICE] listening on {host}:{port}", flush=True)

    while True:
        ready, _, _ = select.select([tcp, udp], [], [], 1.0)
        for sock in ready:
            if sock is tcp:
                conn, _ = tcp.accept()
                conn.close()
                continue
            data, peer = udp.recvfrom(4096)
            request = DNSRecord.parse(data)
            reply = request.reply()
            if request.q.qtype == QTYPE.A:
                reply.add_answer(RR(request.q.qname, QTYPE.A, rdata=A("192.0.2.1"), ttl=60))
            udp.sendto(reply.pack(), peer)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
