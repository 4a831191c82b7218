"""
Pretend to be an RFID reader: publish one frame to the broker and print the
feedback the bridge sends back.

Usage:
  python tools/sim_reader.py mqtt://localhost:1883 scan 6C429C42
  python tools/sim_reader.py mqtt://localhost:1883 scan 6C429C42 --repeat 2 --gap 0.5
  python tools/sim_reader.py mqtt://localhost:1883 register 04A1B2C3
  python tools/sim_reader.py mqtt://localhost:1883 reader ESP32-LAB1 --location "Lab 1"
"""
from __future__ import annotations
import argparse
import json
import sys
import time
from datetime import datetime
from pathlib import Path

import paho.mqtt.client as mqtt

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from icct_rfid.mqtt_client import BrokerSettings  # noqa: E402


def _frame(kind: str, value: str, args: argparse.Namespace) -> tuple[str, dict]:
    topics = BrokerSettings().topics
    if kind == "scan":
        return topics.scan, {
            "rfid": value,
            "readerId": args.reader_id,
            "location": args.location,
            "timestamp": datetime.now().isoformat(timespec="seconds"),
            "mode": "attendance",
        }
    if kind == "register":
        return topics.register, {"rfid": value, "mode": "registration"}
    return topics.register, {
        "mode": "reader_registration",
        "deviceId": value,
        "location": args.location,
        "firmwareVersion": "sim-1.0",
    }


def main() -> None:
    ap = argparse.ArgumentParser(description="Simulated RFID reader")
    ap.add_argument("url", help="broker URL, e.g. mqtt://localhost:1883 or ws://host:9001/mqtt")
    ap.add_argument("kind", choices=["scan", "register", "reader"])
    ap.add_argument("value", help="card UID (scan/register) or deviceId (reader)")
    ap.add_argument("--reader-id", type=int, default=1)
    ap.add_argument("--location", default="Lab 1")
    ap.add_argument("--repeat", type=int, default=1)
    ap.add_argument("--gap", type=float, default=0.5, help="seconds between repeats")
    ap.add_argument("--wait", type=float, default=3.0, help="seconds to wait for feedback")
    args = ap.parse_args()

    settings = BrokerSettings(url=args.url)
    ep = settings.endpoint()
    if ep is None:
        sys.exit(f"cannot use broker url {args.url!r}")

    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=f"sim-reader-{int(time.time())}",
        transport=ep.transport,
    )
    if ep.transport == "websockets":
        client.ws_set_options(path=ep.ws_path)
    if ep.tls:
        client.tls_set()
    client.on_message = lambda c, u, msg: print(f"<- {msg.topic} {msg.payload.decode('utf-8', 'replace')}")
    client.connect(ep.host, ep.port)
    client.subscribe(settings.topics.feedback)
    client.loop_start()
    try:
        topic, payload = _frame(args.kind, args.value, args)
        for i in range(max(1, args.repeat)):
            if i:
                time.sleep(args.gap)
            client.publish(topic, json.dumps(payload))
            print(f"-> {topic} {json.dumps(payload)}")
        time.sleep(args.wait)
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
