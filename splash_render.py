#!/usr/bin/env python3
"""
Render an app view (the splash screen by default) from a Mustache template + JSON app data.

Usage:
  python splash_render.py --template tpl/splash-tpl.html --data app.json --output splash.html

Partials referenced as {{> name}} are loaded lazily from the template's
directory, trying "<name>-tpl.html", then "<name>.html", then the bare name.
Without --data the built-in urTrip app data is used.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from stache import Writer

DEFAULT_APP_DATA: Dict[str, Any] = {
    "appName": "urTrip",
    "appSlogan": "Plan.Report.Share",
    "create": "create your trip",
    "open": "open an existing trip",
    "share": "share your trip",
    "year": "2012",
    "rights": "All rights reserved",
    "developer": "Giorgio Natili",
    "developerSite": "webplatform.io",
}

# -----------------------------
# Loading
# -----------------------------
def load_app_data(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return dict(DEFAULT_APP_DATA)
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"App data must be a JSON object: {path}")
    return data

def template_loader(template_dir: Path) -> Callable[[str], Optional[str]]:
    def load(name: str) -> Optional[str]:
        for candidate in (name + "-tpl.html", name + ".html", name):
            path = template_dir / candidate
            if path.is_file():
                return path.read_text(encoding="utf-8")
        return None
    return load

def render_view(
    template_path: Path,
    data: Dict[str, Any],
    writer: Optional[Writer] = None,
    delimiters: Optional[str] = None,
) -> str:
    writer = writer or Writer()
    template = template_path.read_text(encoding="utf-8")
    fn = writer.compile(template, delimiters)
    return fn(data, template_loader(template_path.parent))

# -----------------------------
# CLI
# -----------------------------
def main(argv: Optional[list] = None) -> None:
    ap = argparse.ArgumentParser(description="Render a Mustache view with app data.")
    ap.add_argument("--template", default="tpl/splash-tpl.html", help="Path to Mustache HTML template")
    ap.add_argument("--data", default=None, help="Optional JSON file with the app data")
    ap.add_argument("--output", default=None, help="Path to write rendered HTML (stdout if omitted)")
    ap.add_argument("--tags", default=None, help='Delimiter pair for the template, e.g. "<% %>"')
    ap.add_argument("--data-out", default=None, help="Optional path to write the effective view data as JSON")
    args = ap.parse_args(argv)

    data = load_app_data(Path(args.data) if args.data else None)

    if args.data_out:
        Path(args.data_out).write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    html_out = render_view(Path(args.template), data, delimiters=args.tags)

    if args.output is None:
        sys.stdout.write(html_out)
        return
    out_path = Path(args.output)
    out_path.write_text(html_out, encoding="utf-8")
    print(f"Wrote: {out_path}")

if __name__ == "__main__":
    main()
