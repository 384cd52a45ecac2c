#!/usr/bin/env python3
"""Divi converter: pull embedded Divi block JSON out of WP block text, merge it, and emit CSS."""

from __future__ import annotations

import argparse
import html
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

TYPE_PREFIX = "divi_"
MARKER_NAMESPACE = "wp:divi/"
STYLE_KEY = "style"
PREFER_SINGLE = ("divi_section", "divi_row", "divi_column", "divi_blurb")
SELECTOR_COMBINATORS = (" ", ">", "+", "~", ",")
ESCAPE_HINTS = ('\\"', "\\n", "\\t")


@dataclass(frozen=True)
class ConverterConfig:
    prefix: str = TYPE_PREFIX
    namespace: str = MARKER_NAMESPACE
    style_key: str = STYLE_KEY
    prefer_single: Tuple[str, ...] = PREFER_SINGLE

    def marker_pattern(self) -> re.Pattern[str]:
        return _compile_marker_pattern(self.namespace)


DEFAULT_CONFIG = ConverterConfig()


@lru_cache(maxsize=None)
def _compile_marker_pattern(namespace: str) -> re.Pattern[str]:
    return re.compile(
        r"<!--\s*" + re.escape(namespace) + r"(?P<type>[\w\-]+)\s+(?P<payload>\{(?:(?!-->).)*?)\s*/?-->",
        re.S,
    )


@dataclass
class Marker:
    type_name: str
    payload_text: str
    start: int = 0


@dataclass(frozen=True)
class One:
    item: Any

    def items(self) -> List[Any]:
        return [self.item]

    def plain(self) -> Any:
        return self.item


@dataclass(frozen=True)
class Many:
    entries: Tuple[Any, ...]

    def items(self) -> List[Any]:
        return list(self.entries)

    def plain(self) -> List[Any]:
        return list(self.entries)


Entry = Union[One, Many]
Group = Dict[str, Entry]


@dataclass
class Attempt:
    order: int
    name: str
    outcome: str
    markers: int = 0
    ignored: int = 0


@dataclass
class Diagnostics:
    attempts: List[Attempt] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    style_counts: Dict[str, int] = field(default_factory=dict)
    ignored: int = 0

    def attempted(self) -> List[str]:
        return [a.name for a in self.attempts if a.outcome != "skipped"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": [
                {"order": a.order, "name": a.name, "outcome": a.outcome, "markers": a.markers, "ignored": a.ignored}
                for a in self.attempts
            ],
            "counts": dict(self.counts),
            "style_counts": dict(self.style_counts),
            "ignored": self.ignored,
        }


@dataclass
class MergeResult:
    blocks: Group
    style: Group
    counts: Dict[str, int]
    style_counts: Dict[str, int]
    ignored: int = 0

    @property
    def empty(self) -> bool:
        return not self.blocks and not self.style


@dataclass
class Conversion:
    blocks: Group
    style: Group
    strategy: str
    diagnostics: Diagnostics

    @property
    def rendered_css(self) -> str:
        return render_css(self.style)

    def to_dict(self) -> Dict[str, Any]:
        return {"blocks": plain_group(self.blocks), "style": plain_group(self.style)}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=4)


@dataclass
class ConversionFailure:
    reason: str
    attempts: List[str]
    diagnostics: Diagnostics


NO_MARKERS_FOUND = "no_markers_found"
NO_VALID_PAYLOADS = "no_valid_payloads"


def plain_group(group: Group) -> Dict[str, Any]:
    return {key: entry.plain() for key, entry in group.items()}


def make_type_key(type_name: str, prefix: str = TYPE_PREFIX) -> str:
    return prefix + type_name.strip().lower().replace("-", "_")


def scan_markers(text: str, config: Optional[ConverterConfig] = None) -> List[Marker]:
    cfg = config or DEFAULT_CONFIG
    return [
        Marker(type_name=m.group("type").strip(), payload_text=m.group("payload").strip(), start=m.start())
        for m in cfg.marker_pattern().finditer(text)
    ]


def merge_markers(markers: List[Marker], config: Optional[ConverterConfig] = None) -> MergeResult:
    cfg = config or DEFAULT_CONFIG
    blocks: Dict[str, List[Any]] = {}
    styles: Dict[str, List[Any]] = {}
    ignored = 0

    for marker in markers:
        try:
            decoded = json.loads(marker.payload_text)
        except ValueError:
            ignored += 1
            continue
        if not isinstance(decoded, dict):
            ignored += 1
            continue

        key = make_type_key(marker.type_name, cfg.prefix)
        subtree = decoded.pop(cfg.style_key, None)

        blocks.setdefault(key, []).append(decoded)
        if subtree is not None:
            styles.setdefault(key, []).append(subtree)

    return MergeResult(
        blocks=collapse_group(blocks, cfg.prefer_single),
        style=collapse_group(styles, cfg.prefer_single),
        counts={k: len(v) for k, v in blocks.items()},
        style_counts={k: len(v) for k, v in styles.items()},
        ignored=ignored,
    )


def collapse_group(group: Dict[str, List[Any]], prefer_single: Tuple[str, ...]) -> Group:
    out: Group = {}
    for key, entries in group.items():
        if key in prefer_single and len(entries) == 1:
            out[key] = One(entries[0])
        else:
            out[key] = Many(tuple(entries))
    return out


_JSON_STRING_TOKEN = re.compile(r'\\(?:["\\/bfnrt]|u[0-9a-fA-F]{4})|\\|"|[\x00-\x1f]')
_C_ESCAPE = re.compile(r"\\(?:([0-7]{1,3})|x([0-9a-fA-F]{1,2})|(.))", re.S)
_C_SIMPLE = {"n": "\n", "t": "\t", "r": "\r", "a": "\a", "v": "\v", "b": "\b", "f": "\f"}


def strategy_raw(text: str) -> Optional[str]:
    return text


def strategy_whole_string(text: str) -> Optional[str]:
    try:
        decoded = json.loads(text)
    except ValueError:
        return None
    return decoded if isinstance(decoded, str) else None


def json_wrap_unescape(text: str) -> Optional[str]:
    if not any(hint in text for hint in ESCAPE_HINTS):
        return None

    def repl(match: re.Match[str]) -> str:
        token = match.group(0)
        if len(token) > 1:
            return token
        if token == "\\":
            return "\\\\"
        if token == '"':
            return '\\"'
        return "\\u%04x" % ord(token)

    try:
        decoded = json.loads('"' + _JSON_STRING_TOKEN.sub(repl, text) + '"')
    except ValueError:
        return None
    if not isinstance(decoded, str) or decoded == text:
        return None
    return decoded


def strip_c_slashes(text: str) -> str:
    def repl(match: re.Match[str]) -> str:
        octal, hexa, char = match.groups()
        if octal is not None:
            return chr(int(octal, 8) & 0xFF)
        if hexa is not None:
            return chr(int(hexa, 16))
        return _C_SIMPLE.get(char, char)

    return _C_ESCAPE.sub(repl, text)


def strategy_stripcslashes(text: str) -> Optional[str]:
    stripped = strip_c_slashes(text)
    return stripped if stripped != text else None


STRATEGIES: Tuple[Tuple[str, Callable[[str], Optional[str]]], ...] = (
    ("raw", strategy_raw),
    ("decoded_entire_file_as_string", strategy_whole_string),
    ("unescaped_with_json_wrapper", json_wrap_unescape),
    ("stripcslashes_fallback", strategy_stripcslashes),
)


def convert(raw_text: str, config: Optional[ConverterConfig] = None) -> Union[Conversion, ConversionFailure]:
    cfg = config or DEFAULT_CONFIG
    diagnostics = Diagnostics()
    saw_markers = False

    for order, (name, strategy) in enumerate(STRATEGIES, start=1):
        candidate = strategy(raw_text)
        if candidate is None:
            diagnostics.attempts.append(Attempt(order=order, name=name, outcome="skipped"))
            continue

        markers = scan_markers(candidate, cfg)
        if not markers:
            diagnostics.attempts.append(Attempt(order=order, name=name, outcome="no_markers"))
            continue
        saw_markers = True

        merged = merge_markers(markers, cfg)
        if merged.empty:
            diagnostics.attempts.append(
                Attempt(order=order, name=name, outcome="no_valid_payloads", markers=len(markers), ignored=merged.ignored)
            )
            continue

        diagnostics.attempts.append(
            Attempt(order=order, name=name, outcome="ok", markers=len(markers), ignored=merged.ignored)
        )
        diagnostics.counts = merged.counts
        diagnostics.style_counts = merged.style_counts
        diagnostics.ignored = merged.ignored
        return Conversion(blocks=merged.blocks, style=merged.style, strategy=name, diagnostics=diagnostics)

    reason = NO_VALID_PAYLOADS if saw_markers else NO_MARKERS_FOUND
    return ConversionFailure(reason=reason, attempts=diagnostics.attempted(), diagnostics=diagnostics)


def classify_failure(failure: ConversionFailure) -> Tuple[str, List[str]]:
    summary = "No Divi blocks found or JSON could not be parsed."
    tried = ", ".join(failure.attempts) or "none"
    if failure.reason == NO_VALID_PAYLOADS:
        return (
            summary,
            [
                "Block markers were found but none carried a valid JSON object.",
                "Check that the export was not truncated or double-escaped by hand.",
                f"Strategies tried: {tried}.",
            ],
        )
    return (
        summary,
        [
            "The file has no <!-- wp:divi/... { ... } --> markers.",
            "Upload the raw block markup, not the rendered page HTML.",
            f"Strategies tried: {tried}.",
        ],
    )


def normalize_selector(sel: str) -> str:
    s = sel.strip()
    if not s:
        return ".unknown"
    if s[0] in ".#[":
        return s
    if not any(ch in s for ch in SELECTOR_COMBINATORS):
        # Bare words become classes rather than tag selectors.
        return "." + s
    return s


def normalize_declarations(raw: str) -> str:
    flat = re.sub(r"\s+", " ", raw)
    decls: List[str] = []
    for part in flat.split(";"):
        part = part.strip()
        if not part or ":" not in part:
            continue
        prop, val = part.split(":", 1)
        prop = prop.strip()
        val = val.strip()
        if not prop or not val:
            continue
        prop = re.sub(r"[^a-zA-Z0-9_-]", "-", prop)
        decls.append(f"{prop}: {val};")
    return " ".join(decls)


def style_instances(entry: Any) -> List[Any]:
    if isinstance(entry, (One, Many)):
        return entry.items()
    if isinstance(entry, list):
        return entry
    return [entry]


def render_css(style_group: Dict[str, Any]) -> str:
    if not style_group:
        return ""

    out: List[str] = []
    for type_key, entry in style_group.items():
        parent_class = "." + type_key
        for idx, inst in enumerate(style_instances(entry), start=1):
            if not isinstance(inst, dict):
                continue
            for breakpoint, node in inst.items():
                if not isinstance(node, dict):
                    continue
                value = node.get("value")
                decl_map = value if isinstance(value, dict) else node

                out.append(f"/* {type_key} [{idx}] | {breakpoint} */")
                for selector_key, decl_string in decl_map.items():
                    if not isinstance(decl_string, str):
                        continue
                    decls = normalize_declarations(decl_string)
                    if not decls:
                        continue
                    out.append(f"{parent_class} {normalize_selector(str(selector_key))} {{ {decls} }}")
                out.append("")

    return "\n".join(out).strip()


def esc(value: str) -> str:
    return html.escape(value or "", quote=True)


def render_upload_page(
    conversion: Optional[Conversion] = None,
    error: Optional[Tuple[str, List[str]]] = None,
    downloads: Optional[Dict[str, str]] = None,
) -> str:
    body = ""
    if error:
        summary, hints = error
        hint_items = "".join(f"<li>{esc(hint)}</li>" for hint in hints)
        body = f"""
    <div class="error-card">
      <div class="error-title">Error</div>
      <div>{esc(summary)}</div>
      <ul>{hint_items}</ul>
    </div>"""
    elif conversion is not None:
        links = downloads or {}
        css_link = f'<a class="btn" href="{esc(links.get("css", ""))}">Download</a>' if links.get("css") else ""
        json_link = f'<a class="btn" href="{esc(links.get("json", ""))}">Download</a>' if links.get("json") else ""
        body = f"""
    <div class="ok">Conversion successful via {esc(conversion.strategy)}.</div>
    <section>
      <div class="result-head"><h2>Only CSS</h2>{css_link}</div>
      <pre>{esc(conversion.rendered_css)}</pre>
    </section>
    <section>
      <div class="result-head"><h2>Full merged JSON</h2>{json_link}</div>
      <pre>{esc(conversion.to_json())}</pre>
    </section>"""

    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>Divi JSON Parser</title>
  <style>
    :root {{
      --ink: #17181b;
      --muted: #6b6d73;
      --line: #d8dadd;
      --panel: #272822;
      --danger: #b42318;
    }}
    body {{ margin: 0; color: var(--ink); font-family: -apple-system, BlinkMacSystemFont, "Helvetica Neue", Arial, sans-serif; }}
    .wrap {{ max-width: 960px; margin: 40px auto 64px; padding: 0 22px; }}
    .muted {{ color: var(--muted); }}
    .btn {{ border: 1px solid var(--line); background: #fff; color: #1f2329; border-radius: 999px; padding: 6px 12px; font-size: 13px; text-decoration: none; }}
    .result-head {{ display: flex; align-items: center; justify-content: space-between; }}
    pre {{ background: var(--panel); color: #f8f8f2; padding: 14px; border-radius: 8px; overflow: auto; font-size: 12px; white-space: pre-wrap; }}
    .ok {{ margin: 18px 0; font-weight: 600; }}
    .error-card {{ border: 1px solid #f2d4cf; background: #fff8f7; border-radius: 10px; padding: 14px; margin-top: 18px; }}
    .error-title {{ color: var(--danger); font-weight: 700; margin-bottom: 6px; }}
  </style>
</head>
<body>
  <main class="wrap">
    <h1>Divi JSON Parser</h1>
    <p class="muted">Upload a file containing your WP block string (with <code>&lt;!-- wp:divi/... {{ ... }} --&gt;</code>).
    You get the CSS on its own and the full merged JSON (<code>{{ blocks, style }}</code>).</p>
    <form method="post" action="/" enctype="multipart/form-data">
      <input type="file" name="file" accept=".json,.txt" required />
      <button class="btn" type="submit">Convert</button>
    </form>{body}
  </main>
</body>
</html>
"""


def output_filename(now: Optional[datetime] = None, ext: str = ".json") -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"divi-converted-{stamp}{ext}"


def format_stats(diagnostics: Diagnostics) -> str:
    lines = []
    for a in diagnostics.attempts:
        lines.append(f"  {a.order}. {a.name}: {a.outcome} (markers={a.markers}, ignored={a.ignored})")
    for key, count in diagnostics.counts.items():
        styled = diagnostics.style_counts.get(key, 0)
        lines.append(f"  {key}: {count} block(s), {styled} style tree(s)")
    return "\n".join(lines)


def run(
    source: Path,
    json_out: Path,
    css_out: Path,
    config: Optional[ConverterConfig] = None,
) -> Union[Conversion, ConversionFailure]:
    raw = source.read_text(encoding="utf-8", errors="replace")
    result = convert(raw, config)
    if isinstance(result, ConversionFailure):
        return result
    json_out.write_text(result.to_json(), encoding="utf-8")
    css_out.write_text(result.rendered_css, encoding="utf-8")
    return result


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Merge embedded Divi block JSON and extract its CSS")
    ap.add_argument("input", help="File containing WP block markup (.json or .txt)")
    ap.add_argument("-o", "--output", help="Merged JSON output path (default: <input>.json)")
    ap.add_argument("--css", help="CSS output path (default: <input>.css)")
    ap.add_argument("--prefix", default=TYPE_PREFIX, help="Prefix for type keys")
    ap.add_argument("--namespace", default=MARKER_NAMESPACE, help="Marker namespace inside the comment")
    ap.add_argument("--style-key", default=STYLE_KEY, help="Reserved key holding the style subtree")
    ap.add_argument("--stats", action="store_true", help="Print attempt log and per-type counts")
    args = ap.parse_args(argv)

    source = Path(args.input)
    json_out = Path(args.output) if args.output else source.with_name(source.stem + ".converted.json")
    css_out = Path(args.css) if args.css else source.with_name(source.stem + ".converted.css")
    config = ConverterConfig(prefix=args.prefix, namespace=args.namespace, style_key=args.style_key)

    try:
        result = run(source, json_out, css_out, config)
    except OSError as exc:
        print(f"Could not read file contents: {exc}")
        return 1

    if isinstance(result, ConversionFailure):
        summary, hints = classify_failure(result)
        print(f"Error: {summary}")
        for hint in hints:
            print(f"  - {hint}")
        if args.stats:
            print(format_stats(result.diagnostics))
        return 1

    print(f"Converted via {result.strategy}: JSON written to {json_out}, CSS written to {css_out}")
    if args.stats:
        print(format_stats(result.diagnostics))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
