"""Serialize a DiagramIR as a Mermaid flowchart."""
from typing import Dict, List
import json

from .compiler import (DiagramIR, STYLE_EXPAND, STYLE_FOCUS, STYLE_INCOMING,
                       STYLE_OUTGOING, STYLE_TABLE)

FONT_FAMILY = 'ui-monospace, SFMono-Regular, "SF Mono", Consolas, "Liberation Mono", Menlo, monospace'

THEMES: Dict[str, Dict[str, object]] = {
    "dark": {
        "theme": "dark",
        "themeVariables": {
            "primaryColor": "#1e1e1e",
            "primaryTextColor": "#cccccc",
            "primaryBorderColor": "#3c3c3c",
            "lineColor": "#5a5a5a",
            "secondaryColor": "#252526",
            "tertiaryColor": "#2d2d30",
            "background": "#1e1e1e",
            "mainBkg": "#252526",
            "fontFamily": FONT_FAMILY,
            "fontSize": "14px",
        },
    },
    "default": {
        "theme": "default",
        "themeVariables": {"fontFamily": FONT_FAMILY, "fontSize": "14px"},
    },
}

CLASS_DEFS = {
    STYLE_FOCUS: "fill:#0e639c,stroke:#1177bb,color:#fff",
    STYLE_INCOMING: "fill:#16825d,stroke:#1ea271,color:#fff",
    STYLE_EXPAND: "fill:#3c3c3c,stroke:#5a5a5a,color:#fff,cursor:pointer",
}

LINK_STYLES = {
    STYLE_INCOMING: "stroke:#1ea271",
    STYLE_OUTGOING: "stroke:#1177bb",
}


def _init_directive(theme: str) -> str:
    config = dict(THEMES.get(theme) or THEMES["default"])
    # Plain SVG text labels: QtSvg does not render <foreignObject>.
    config["flowchart"] = {"htmlLabels": False, "curve": "basis", "padding": 20}
    return "%%{init: " + json.dumps(config, sort_keys=True) + "}%%"


def to_mermaid(ir: DiagramIR, theme: str = "dark") -> str:
    """Return Mermaid flowchart source for ``ir``.

    Labels and ids in the IR are already sanitized; nothing is escaped here.
    """
    lines: List[str] = [_init_directive(theme), "graph TD"]

    for node in ir.nodes:
        if node.subtitle:
            lines.append(f"  {node.node_id}[{node.title}<br/>{node.subtitle}]")
        else:
            lines.append(f"  {node.node_id}[{node.title}]")

    link_styles: List[str] = []
    for index, edge in enumerate(ir.edges):
        if edge.style == STYLE_EXPAND:
            lines.append(f"  {edge.source_id} -.-> {edge.target_id}")
        elif edge.label:
            lines.append(f"  {edge.source_id} -->|{edge.label}| {edge.target_id}")
        else:
            lines.append(f"  {edge.source_id} --> {edge.target_id}")
        style = LINK_STYLES.get(edge.style)
        if style:
            link_styles.append(f"  linkStyle {index} {style}")
    lines.extend(link_styles)

    by_class: Dict[str, List[str]] = {}
    for node in ir.nodes:
        if node.style != STYLE_TABLE:
            by_class.setdefault(node.style, []).append(node.node_id)
    for style, ids in by_class.items():
        lines.append(f"  classDef {style} {CLASS_DEFS.get(style, '')}".rstrip())
        lines.append(f"  class {','.join(ids)} {style}")

    return "\n".join(lines) + "\n"
