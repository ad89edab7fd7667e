"""
Lightweight mock WhatsApp Cloud API for live e2e testing.

Point WA_GRAPH_API_URL at it (e.g. http://mock-graph:8080) and set
ENABLE_WA_SEND=true.

Endpoints:
- POST /<phone_number_id>/messages -> records the send, returns a wamid
                                      (recipients starting with +999 get a 500)
- GET  /<media_id>                 -> returns a download URL for the media
- GET  /_last                      -> returns the last send request
- POST /_reset                     -> clears recorded sends
- GET  /_health                    -> returns 200
"""
import itertools
import json
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import List, Optional


SENT_REQUESTS: List[dict] = []
MESSAGE_IDS = itertools.count(1)
FAILING_PREFIX = "+999"


def _last() -> Optional[dict]:
    return SENT_REQUESTS[-1] if SENT_REQUESTS else None


class Handler(BaseHTTPRequestHandler):
    def _send_json(self, status_code: int, payload: dict) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> dict:
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length).decode("utf-8") if length else ""
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            return {"_raw": raw}

    def do_GET(self):  # noqa: N802
        if self.path == "/_health":
            return self._send_json(200, {"status": "ok"})

        if self.path == "/_last":
            return self._send_json(200, {"last": _last(), "count": len(SENT_REQUESTS)})

        media_id = self.path.strip("/").split("/")[-1]
        if media_id:
            host = self.headers.get("Host", "localhost:8080")
            return self._send_json(200, {
                "id": media_id,
                "url": f"http://{host}/media/{media_id}",
                "mime_type": "image/jpeg",
            })

        return self._send_json(404, {"error": {"message": "not_found"}})

    def do_POST(self):  # noqa: N802
        if self.path == "/_reset":
            SENT_REQUESTS.clear()
            return self._send_json(200, {"status": "reset"})

        if self.path.endswith("/messages"):
            payload = self._read_json()
            to_phone = str(payload.get("to", ""))

            if to_phone.startswith(FAILING_PREFIX):
                return self._send_json(500, {
                    "error": {"message": "Service temporarily unavailable", "code": 2}
                })

            message_id = f"wamid.MOCK{next(MESSAGE_IDS)}"
            SENT_REQUESTS.append({
                "path": self.path,
                "headers": {k.lower(): v for k, v in self.headers.items()},
                "payload": payload,
                "message_id": message_id,
            })
            return self._send_json(200, {
                "messaging_product": "whatsapp",
                "contacts": [{"input": to_phone, "wa_id": to_phone.lstrip("+")}],
                "messages": [{"id": message_id}],
            })

        return self._send_json(404, {"error": {"message": "not_found"}})

    def log_message(self, format, *args):  # noqa: A003
        return


def main() -> None:
    server = HTTPServer(("0.0.0.0", 8080), Handler)
    server.serve_forever()


if __name__ == "__main__":
    main()
