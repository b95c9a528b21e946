#!/usr/bin/env python3
"""
Kleines CLI gegen ein laufendes Backend:
    upload_cli.py --file handbuch.pdf
    upload_cli.py --chat "Qual a potência recomendada?" --session demo
"""
import argparse
import json
import sys
import uuid
from pathlib import Path
from typing import Optional, Tuple
from urllib import request, error


def build_multipart(field: str, filename: str, content: bytes, boundary: Optional[str] = None) -> Tuple[bytes, str]:
    """Liefert (body, content_type) für einen einzelnen Datei-Part."""
    boundary = boundary or f"----ragchat{uuid.uuid4().hex}"
    boundary_bytes = boundary.encode()
    body = (
        b"--" + boundary_bytes + b"\r\n"
        b'Content-Disposition: form-data; name="' + field.encode() + b'"; filename="' + filename.encode("utf-8") + b'"\r\n'
        b"Content-Type: application/octet-stream\r\n\r\n" +
        content + b"\r\n" +
        b"--" + boundary_bytes + b"--\r\n"
    )
    return body, f"multipart/form-data; boundary={boundary}"


def _send(req: request.Request) -> dict:
    try:
        with request.urlopen(req) as resp:
            print("Status:", resp.status)
            return json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        print("HTTP Error:", e.code)
        print(e.read().decode("utf-8"))
        sys.exit(1)
    except error.URLError as e:
        print("Connection error:", e)
        sys.exit(1)


def post_file(url: str, file_path: str) -> dict:
    path = Path(file_path)
    if not path.is_file():
        print("File not found:", file_path)
        sys.exit(1)

    body, content_type = build_multipart("file", path.name, path.read_bytes())
    headers = {
        "Content-Type": content_type,
        "Content-Length": str(len(body)),
    }
    return _send(request.Request(url, data=body, headers=headers))


def post_chat(url: str, message: str, provider: Optional[str] = None, session: Optional[str] = None) -> dict:
    payload = {"message": message}
    if provider:
        payload["provider"] = provider
    if session:
        payload["session_id"] = session
    data = json.dumps(payload).encode("utf-8")
    return _send(request.Request(url, data=data, headers={"Content-Type": "application/json"}))


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:3000")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--file")
    group.add_argument("--chat")
    parser.add_argument("--provider")
    parser.add_argument("--session")
    args = parser.parse_args()

    base = args.base_url.rstrip("/")
    if args.file:
        result = post_file(base + "/upload", args.file)
    else:
        result = post_chat(base + "/chat", args.chat, args.provider, args.session)
    print(json.dumps(result, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
