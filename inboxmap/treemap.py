"""
Treemap - Squarified layout and per-level view building
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

from inboxmap.colors import contrast_text_color
from inboxmap.grouping import aggregate_others, get_count
from inboxmap.models import (
    DEFAULT_COLOR, OTHERS_ID, CountFilter, DomainColorInfo, DomainNode,
    HierarchyNode, NodeKind, TreemapTile, TreemapView
)


logger = logging.getLogger(__name__)

MIN_TILE_PERCENT = 1.5  # keep tiles big enough to click


# === Squarified Layout ===

def compute_treemap(
    items: Sequence[Dict],
    width: float = 100.0,
    height: float = 100.0,
    x: float = 0.0,
    y: float = 0.0
) -> List[Dict]:
    """
    Lay out weighted items inside a rectangle using the squarified algorithm.

    Each item is a dict with a positive 'count'; other keys are carried through.
    Returns copies of the items with x, y, width and height added, in the same
    units as the input rectangle. Items with no weight get no rectangle.
    """
    weighted = [item for item in items if item['count'] > 0]
    if not weighted:
        return []
    if len(weighted) == 1:
        return [{**weighted[0], 'x': x, 'y': y, 'width': width, 'height': height}]

    ordered = sorted(weighted, key=lambda item: item['count'], reverse=True)
    return _squarify(ordered, x, y, width, height)


def _squarify(ordered: List[Dict], x: float, y: float, width: float, height: float) -> List[Dict]:
    placed = []

    while ordered:
        if len(ordered) == 1:
            placed.append({**ordered[0], 'x': x, 'y': y, 'width': width, 'height': height})
            break

        total = sum(item['count'] for item in ordered)
        is_wide = width >= height

        row_size = 1
        best = _worst_aspect_ratio(ordered[:1], total, width, height, is_wide)
        for size in range(2, len(ordered) + 1):
            candidate = _worst_aspect_ratio(ordered[:size], total, width, height, is_wide)
            if candidate > best:
                break
            best = candidate
            row_size = size

        row = ordered[:row_size]
        fraction = sum(item['count'] for item in row) / total

        if is_wide:
            row_width = width * fraction
            placed.extend(_place_row(row, x, y, row_width, height, is_wide))
            x += row_width
            width -= row_width
        else:
            row_height = height * fraction
            placed.extend(_place_row(row, x, y, width, row_height, is_wide))
            y += row_height
            height -= row_height

        ordered = ordered[row_size:]

    return placed


def _row_rects(row: List[Dict], total: float, width: float, height: float, is_wide: bool):
    """(w, h) of each row item if the row were committed against the short side"""
    row_total = sum(item['count'] for item in row)
    if is_wide:
        thickness = width * row_total / total
        return [(thickness, height * item['count'] / row_total) for item in row]
    thickness = height * row_total / total
    return [(width * item['count'] / row_total, thickness) for item in row]


def _aspect_ratio(w: float, h: float) -> float:
    if w <= 0 or h <= 0:
        return math.inf
    return max(w / h, h / w)


def _worst_aspect_ratio(row: List[Dict], total: float, width: float, height: float, is_wide: bool) -> float:
    return max(_aspect_ratio(w, h) for w, h in _row_rects(row, total, width, height, is_wide))


def _place_row(row: List[Dict], x: float, y: float, width: float, height: float, is_wide: bool) -> List[Dict]:
    row_total = sum(item['count'] for item in row)
    results = []
    offset = 0.0

    for item in row:
        fraction = item['count'] / row_total
        if is_wide:
            item_height = height * fraction
            results.append({**item, 'x': x, 'y': y + offset, 'width': width, 'height': item_height})
            offset += item_height
        else:
            item_width = width * fraction
            results.append({**item, 'x': x + offset, 'y': y, 'width': item_width, 'height': height})
            offset += item_width

    return results


# === Tile Inflation ===

def inflate_tiles(items: Sequence[Dict], min_percent: float = MIN_TILE_PERCENT) -> List[Dict]:
    """Add a 'visual_count' that gives tiny items a minimum share of the layout"""
    total = sum(item['count'] for item in items)
    floor = math.ceil(min_percent * total / 100)
    inflated = []

    for item in items:
        natural_percent = item['count'] / total * 100 if total > 0 else 0
        if natural_percent < min_percent and len(items) > 1:
            inflated.append({**item, 'visual_count': max(item['count'], floor)})
        else:
            inflated.append({**item, 'visual_count': item['count']})

    return inflated


# === View Building ===

def _node_color(node: HierarchyNode, domain_colors: Dict[str, DomainColorInfo]) -> Optional[str]:
    info = domain_colors.get(node.id)
    if info and info.color:
        return info.color
    return node.color


def build_treemap_view(
    hierarchy: List[DomainNode],
    domain_colors: Dict[str, DomainColorInfo],
    path: Sequence[str] = (),
    count_filter: CountFilter = CountFilter.ALL,
    others_label: str = "Others"
) -> TreemapView:
    """Lay out the level reached by following path from the top of the hierarchy"""
    current: List[HierarchyNode] = list(hierarchy)
    parent_color = None
    breadcrumbs = []

    for node_id in path:
        if node_id == OTHERS_ID:
            aggregated = aggregate_others(current, count_filter, others_label)
            bucket = next((n for n in aggregated if n.kind is NodeKind.OTHERS), None)
            if bucket:
                breadcrumbs.append({'id': bucket.id, 'name': bucket.name})
                current = bucket.children
                continue

        found = next((n for n in current if n.id == node_id), None)
        if found is None:
            logger.debug(f"Path element {node_id} not found at this level, skipping")
            continue

        breadcrumbs.append({'id': found.id, 'name': found.name})
        current = found.children
        parent_color = _node_color(found, domain_colors) or parent_color

    display = aggregate_others(current, count_filter, others_label) if not path else current

    processed = []
    for node in display:
        count = get_count(node, count_filter)
        if count <= 0:
            continue
        info = domain_colors.get(node.id)
        processed.append({
            'id': node.id,
            'count': count,
            'node': node,
            'color': _node_color(node, domain_colors) or parent_color or DEFAULT_COLOR,
            'favicon_url': info.favicon_url if info else None
        })
    processed.sort(key=lambda item: item['count'], reverse=True)

    total = sum(item['count'] for item in processed)
    adjusted = inflate_tiles(processed)
    layout = compute_treemap([{**item, 'count': item['visual_count']} for item in adjusted])

    # put the real counts back after the visual stretch
    true_counts = {item['id']: item['count'] for item in adjusted}
    tiles = []
    for rect in layout:
        node = rect['node']
        count = true_counts.get(rect['id'], rect['count'])
        tiles.append(TreemapTile(
            id=node.id,
            name=node.name,
            count=count,
            x=rect['x'],
            y=rect['y'],
            width=rect['width'],
            height=rect['height'],
            kind=node.kind,
            color=rect['color'],
            favicon_url=rect['favicon_url'],
            is_others=node.kind is NodeKind.OTHERS,
            percentage=round(count / total * 100, 1) if total else 0.0,
            text_color=contrast_text_color(rect['color']),
            is_zoomable=bool(node.children)
        ))

    return TreemapView(
        items=tiles,
        total_count=total,
        breadcrumbs=breadcrumbs,
        view_mode="list" if path else "grid"
    )


def visible_domain_ids(
    hierarchy: List[DomainNode],
    count_filter: CountFilter = CountFilter.ALL,
    others_label: str = "Others"
) -> List[str]:
    """Real domains shown as their own tiles at the top level"""
    return [
        node.id for node in aggregate_others(list(hierarchy), count_filter, others_label)
        if node.kind is NodeKind.DOMAIN
    ]
