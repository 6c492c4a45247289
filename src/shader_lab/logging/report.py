from __future__ import annotations

import base64
import html as html_module
import json
from pathlib import Path

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


def _media_type_for(path: Path) -> str:
    return _MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream")


def _load_records(records_dir: Path) -> list[dict]:
    return [json.loads(p.read_text()) for p in sorted(records_dir.glob("iter_*.json"))]


def generate_history_html(session_dir: Path) -> Path:
    """Write a self-contained HTML page of a session's significant iterations."""
    records = [r for r in _load_records(session_dir / "records") if r.get("significant")]
    summary_path = session_dir / "summary.json"
    summary = json.loads(summary_path.read_text()) if summary_path.exists() else {}
    prompt = html_module.escape(summary.get("prompt") or (records[0]["prompt"] if records else ""))

    # Newest first
    cards_html = "".join(_build_card(r, session_dir) for r in reversed(records))
    if not cards_html:
        cards_html = '<p style="text-align:center;color:#aaa;">No iterations recorded.</p>'

    status = html_module.escape(summary.get("status", ""))

    html = f"""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Shader Lab History: {prompt[:60]}</title>
<style>
    body {{ font-family: system-ui, sans-serif; background: #1a1a2e; color: #eee; margin: 2rem; }}
    h1 {{ text-align: center; color: #e94560; }}
    h2 {{ text-align: center; color: #aaa; font-weight: normal; }}
    .grid {{ display: flex; flex-wrap: wrap; gap: 1.5rem; justify-content: center; margin-top: 2rem; }}
    .card {{
        background: #16213e; border-radius: 12px; padding: 1rem;
        width: 300px; box-shadow: 0 4px 12px rgba(0,0,0,0.3);
        border-top: 4px solid #7f8c8d;
    }}
    .card.ok {{ border-top-color: #27ae60; }}
    .card h3 {{ margin: 0 0 0.5rem; color: #e94560; font-size: 0.9rem; }}
    .card img {{ width: 100%; border-radius: 8px; }}
    .card pre {{
        font-size: 0.7rem; color: #ccc; background: #0d1117; padding: 0.5rem;
        border-radius: 6px; max-height: 160px; overflow: auto; white-space: pre-wrap;
        word-break: break-word;
    }}
    .metrics {{ font-size: 0.75rem; color: #aaa; margin-top: 0.5rem; }}
</style>
</head>
<body>
<h1>Shader Lab History</h1>
<h2>{prompt}</h2>
<h2>{status}</h2>
<div class="grid">
{cards_html}
</div>
</body>
</html>"""

    out_path = session_dir / "history.html"
    out_path.write_text(html)
    return out_path


def _build_card(record: dict, session_dir: Path) -> str:
    index = record["index"]
    verdict = record["verdict"]
    label = "Initial Generation" if index == 0 else f"Iteration {index}"
    outcome = "Success" if record.get("success") else "Failed"

    thumbnail = ""
    for reference in verdict.get("evidence", [])[:1]:
        path = Path(reference)
        if not path.is_absolute():
            path = session_dir / path
        if path.exists():
            b64 = base64.b64encode(path.read_bytes()).decode()
            thumbnail = f'<img src="data:{_media_type_for(path)};base64,{b64}" alt="{label}">'

    details = verdict.get("diagnostic_log") or record.get("reflection") or ""
    metrics = html_module.escape(json.dumps(verdict.get("metrics", {})))
    css_class = "card ok" if record.get("success") else "card"
    return f"""
    <div class="{css_class}">
        <h3>{label}: {outcome}</h3>
        {thumbnail}
        <pre>{html_module.escape(details[:800])}</pre>
        <p class="metrics">{metrics}</p>
    </div>
    """
