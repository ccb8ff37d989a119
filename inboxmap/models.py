"""
Shared data models for Inbox Map
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


OTHERS_ID = "__others__"
DEFAULT_COLOR = "#64748b"


class NodeKind(str, Enum):
    """Discriminator for hierarchy nodes"""
    DOMAIN = "domain"
    SUBDOMAIN = "subdomain"
    SENDER = "sender"
    OTHERS = "others"


class CountFilter(str, Enum):
    """Which messages count towards a tile's size"""
    ALL = "all"
    UNREAD = "unread"


class SyncStatus(str, Enum):
    IDLE = "idle"
    RESTORING = "restoring"
    FETCHING = "fetching"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class ProgressPhase(str, Enum):
    NONE = ""
    LISTING = "listing"
    FETCHING = "fetching"
    UPDATING = "updating"
    PROCESSING = "processing"
    RESTORING = "restoring"


# === Records ===

@dataclass(frozen=True)
class MessageRecord:
    """Sender metadata for a single inbox message"""
    sender: str
    name: str
    unread: bool
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from': self.sender,
            'name': self.name,
            'unread': self.unread,
            'messageId': self.message_id
        }


# === Hierarchy ===

@dataclass
class SenderNode:
    """Leaf node: one sender address with its read/unread tallies"""
    id: str
    name: str
    unread: int = 0
    read: int = 0
    color: Optional[str] = None
    kind: NodeKind = field(default=NodeKind.SENDER, init=False)

    @property
    def children(self) -> List['HierarchyNode']:
        return []

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind.value, 'id': self.id, 'name': self.name, 'unread': self.unread, 'read': self.read}
        if self.color:
            data['color'] = self.color
        return data


@dataclass
class SubdomainNode:
    """Full sending host, e.g. mail.noreply.github.com"""
    id: str
    name: str
    children: List[SenderNode] = field(default_factory=list)
    color: Optional[str] = None
    kind: NodeKind = field(default=NodeKind.SUBDOMAIN, init=False)

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind.value, 'id': self.id, 'name': self.name,
                'children': [child.to_dict() for child in self.children]}
        if self.color:
            data['color'] = self.color
        return data


@dataclass
class DomainNode:
    """Root registrable domain, e.g. github.com"""
    id: str
    name: str
    children: List[SubdomainNode] = field(default_factory=list)
    color: Optional[str] = None
    kind: NodeKind = field(default=NodeKind.DOMAIN, init=False)

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind.value, 'id': self.id, 'name': self.name,
                'children': [child.to_dict() for child in self.children]}
        if self.color:
            data['color'] = self.color
        return data


@dataclass
class OthersNode:
    """Synthetic bucket wrapping long-tail siblings at one level"""
    name: str
    children: List['HierarchyNode'] = field(default_factory=list)
    id: str = OTHERS_ID
    color: Optional[str] = None
    kind: NodeKind = field(default=NodeKind.OTHERS, init=False)

    @property
    def is_others(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind.value, 'id': self.id, 'name': self.name, 'isOthers': True,
                'children': [child.to_dict() for child in self.children]}


HierarchyNode = Union[DomainNode, SubdomainNode, SenderNode, OthersNode]


def node_from_dict(data: Dict[str, Any]) -> HierarchyNode:
    """Rebuild a hierarchy node from its to_dict() form"""
    kind = NodeKind(data['kind'])
    children = [node_from_dict(child) for child in data.get('children', [])]

    if kind is NodeKind.SENDER:
        return SenderNode(id=data['id'], name=data['name'], unread=int(data.get('unread', 0)),
                          read=int(data.get('read', 0)), color=data.get('color'))
    if kind is NodeKind.SUBDOMAIN:
        return SubdomainNode(id=data['id'], name=data['name'], children=children, color=data.get('color'))
    if kind is NodeKind.DOMAIN:
        return DomainNode(id=data['id'], name=data['name'], children=children, color=data.get('color'))
    if kind is NodeKind.OTHERS:
        return OthersNode(name=data['name'], children=children)
    raise ValueError(f"Unknown node kind: {kind}")


# === Colors ===

@dataclass
class DomainColorInfo:
    """Tile color for a root domain, plus the favicon it was sampled from"""
    color: str
    favicon_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'color': self.color, 'faviconUrl': self.favicon_url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DomainColorInfo':
        return cls(color=data['color'], favicon_url=data.get('faviconUrl'))


def colors_to_entries(colors: Dict[str, DomainColorInfo]) -> List[Tuple[str, Dict[str, Any]]]:
    """Serialize a color map as [id, info] pairs"""
    return [(domain_id, info.to_dict()) for domain_id, info in colors.items()]


def colors_from_entries(entries: Optional[List]) -> Dict[str, DomainColorInfo]:
    return {domain_id: DomainColorInfo.from_dict(info) for domain_id, info in (entries or [])}


# === Sync State ===

@dataclass
class SyncState:
    """The single mutable view-model cell owned by the sync orchestrator"""
    status: SyncStatus = SyncStatus.IDLE
    progress: int = 0
    progress_phase: ProgressPhase = ProgressPhase.NONE
    records: List[MessageRecord] = field(default_factory=list)
    hierarchy: List[DomainNode] = field(default_factory=list)
    domain_colors: Dict[str, DomainColorInfo] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self, include_records: bool = False) -> Dict[str, Any]:
        data = {
            'status': self.status.value,
            'progress': self.progress,
            'progressPhase': self.progress_phase.value,
            'recordCount': len(self.records),
            'hierarchy': [node.to_dict() for node in self.hierarchy],
            'domainColors': colors_to_entries(self.domain_colors),
            'error': self.error
        }
        if include_records:
            data['records'] = [record.to_dict() for record in self.records]
        return data


# === Layout ===

@dataclass
class TreemapTile:
    """One laid-out rectangle, in percentages of the container"""
    id: str
    name: str
    count: int
    x: float
    y: float
    width: float
    height: float
    kind: NodeKind
    color: str = DEFAULT_COLOR
    favicon_url: Optional[str] = None
    is_others: bool = False
    percentage: float = 0.0
    text_color: str = "#ffffff"
    is_zoomable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'kind': self.kind.value,
            'count': self.count,
            'x': self.x,
            'y': self.y,
            'width': self.width,
            'height': self.height,
            'color': self.color,
            'faviconUrl': self.favicon_url,
            'isOthers': self.is_others,
            'percentage': self.percentage,
            'textColor': self.text_color,
            'isZoomable': self.is_zoomable
        }


@dataclass
class TreemapView:
    """Everything needed to draw one navigation level"""
    items: List[TreemapTile]
    total_count: int
    breadcrumbs: List[Dict[str, str]]
    view_mode: str = "grid"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'items': [item.to_dict() for item in self.items],
            'totalCount': self.total_count,
            'breadcrumbs': self.breadcrumbs,
            'viewMode': self.view_mode
        }


# === Configuration ===

@dataclass
class FetchConfig:
    """Configuration for inbox fetching"""
    batch_size: int = 50
    page_size: int = 500
    max_retries: int = 3
    label_ids: Tuple[str, ...] = ("INBOX",)


@dataclass
class EnrichmentConfig:
    """Configuration for favicon color enrichment"""
    concurrency: int = 6
    sample_size: int = 32
    timeout: float = 10.0
    primary_url: str = "https://www.google.com/s2/favicons?domain={domain}&sz=64"
    fallback_url: str = "https://icon.horse/icon/{domain}"


@dataclass
class StoreConfig:
    path: str = "data/inboxmap.db"
