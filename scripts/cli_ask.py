#!/usr/bin/env python3
import asyncio
import html
import os
import sys
from typing import Any, Dict, Optional

import httpx
import orjson


API_URL = os.getenv("WRITETANK_API", "http://127.0.0.1:8765")


async def stream_ask(path: str, payload: Dict[str, Any]) -> int:
    async with httpx.AsyncClient(timeout=None) as client:
        async with client.stream("POST", f"{API_URL}{path}", json=payload) as resp:
            if resp.status_code != 200:
                print(f"HTTP {resp.status_code}: {(await resp.aread()).decode('utf-8', 'ignore')}")
                return 1
            buffer = b""
            async for chunk in resp.aiter_bytes():
                if not chunk:
                    continue
                buffer += chunk
                while b"\n\n" in buffer:
                    raw, buffer = buffer.split(b"\n\n", 1)
                    for line in raw.split(b"\n"):
                        if not line.startswith(b"data: "):
                            continue
                        try:
                            evt = orjson.loads(line[len(b"data: "):])
                        except orjson.JSONDecodeError:
                            continue
                        etype = evt.get("type")
                        if etype == "delta":
                            sys.stdout.write(evt.get("delta", ""))
                            sys.stdout.flush()
                        elif etype == "done":
                            print("\n\n[final]\n" + (evt.get("text") or ""))
                            if evt.get("truncated"):
                                print("[note] document text was truncated")
                        elif etype == "error":
                            print("\n[error]", evt.get("message"))
                            return 1
    return 0


def main() -> int:
    if len(sys.argv) < 3:
        print("Usage: scripts/cli_ask.py <file.tex> 'question' [selection|visible|whole]")
        print("       scripts/cli_ask.py <file.tex> --coach")
        return 2
    path = sys.argv[1]
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    lines = "".join(f'<div class="cm-line">{html.escape(line)}</div>' for line in text.splitlines())
    snapshot = {"url": f"file://{os.path.abspath(path)}", "html": f'<div class="cm-content">{lines}</div>'}
    scope: Optional[str] = sys.argv[3] if len(sys.argv) > 3 else "whole"
    if sys.argv[2] == "--coach":
        payload = {"snapshot": snapshot, "scope": scope}
        return asyncio.run(stream_ask("/api/coach", payload))
    payload = {"snapshot": snapshot, "question": sys.argv[2], "scope": scope}
    return asyncio.run(stream_ask("/api/ask", payload))


if __name__ == "__main__":
    sys.exit(main())
