"""
Grouping - Builds the domain / subdomain / sender hierarchy from flat records
"""

import logging
import re
from typing import Dict, Iterable, List, Tuple

from inboxmap.models import (
    CountFilter, DomainNode, HierarchyNode, MessageRecord, NodeKind,
    OthersNode, SenderNode, SubdomainNode
)


logger = logging.getLogger(__name__)

OTHERS_THRESHOLD = 0.02  # 2% of the level's total
OTHERS_MIN_SIBLINGS = 3
KNOWN_DOUBLE_TLDS = {"co.uk", "co.jp", "com.au", "com.br", "co.in", "co.za"}


# === Address Parsing ===

def parse_from_header(raw: str) -> Tuple[str, str]:
    """Split a From header into (email, display name)"""
    match = re.search(r'<([^>]+)>', raw)
    if match:
        email = match.group(1).strip()
        name = raw[:raw.index('<')].strip().strip('"\'')
        return email, name or email
    email = raw.strip()
    return email, email


def extract_root_domain(email: str) -> str:
    """
    Registrable domain of an address.
    "alice@mail.noreply.github.com" -> "github.com", "bob@test.co.uk" -> "test.co.uk"
    """
    at_index = email.rfind('@')
    if at_index == -1:
        return email

    full = email[at_index + 1:].lower()
    parts = full.split('.')
    if len(parts) <= 2:
        return full

    last_two = '.'.join(parts[-2:])
    if last_two in KNOWN_DOUBLE_TLDS:
        return '.'.join(parts[-3:])
    return last_two


def extract_full_domain(email: str) -> str:
    """Sending host of an address, e.g. "mail.noreply.github.com" """
    at_index = email.rfind('@')
    if at_index == -1:
        return email
    return email[at_index + 1:].lower()


# === Hierarchy ===

def group_records(records: Iterable[MessageRecord]) -> List[DomainNode]:
    """Build a fresh 3-level hierarchy, ordered by first appearance"""
    domains: Dict[str, Dict[str, Dict[str, SenderNode]]] = {}

    for record in records:
        root_domain = extract_root_domain(record.sender)
        full_domain = extract_full_domain(record.sender)
        sender_key = record.sender.lower()

        senders = domains.setdefault(root_domain, {}).setdefault(full_domain, {})
        sender = senders.get(sender_key)
        if sender is None:
            sender = SenderNode(id=sender_key, name=record.name or sender_key)
            senders[sender_key] = sender

        if record.unread:
            sender.unread += 1
        else:
            sender.read += 1

    hierarchy = [
        DomainNode(
            id=root_domain,
            name=root_domain,
            children=[
                SubdomainNode(id=subdomain, name=subdomain, children=list(senders.values()))
                for subdomain, senders in subdomains.items()
            ]
        )
        for root_domain, subdomains in domains.items()
    ]

    logger.debug(f"Grouped records into {len(hierarchy)} domains")
    return hierarchy


def get_count(node: HierarchyNode, count_filter: CountFilter = CountFilter.ALL) -> int:
    """Number of messages under a node for the given filter"""
    if node.kind is NodeKind.SENDER:
        if count_filter is CountFilter.UNREAD:
            return node.unread
        return node.unread + node.read
    if node.kind in (NodeKind.SUBDOMAIN, NodeKind.DOMAIN, NodeKind.OTHERS):
        return sum(get_count(child, count_filter) for child in node.children)
    raise TypeError(f"Unknown node kind: {node.kind}")


def aggregate_others(
    nodes: List[HierarchyNode],
    count_filter: CountFilter = CountFilter.ALL,
    others_label: str = "Others"
) -> List[HierarchyNode]:
    """
    Collapse siblings under 2% of the level's total into one Others bucket.

    Only applies when there are more than three siblings, and a lone
    qualifier is left in place rather than wrapped.
    """
    total = sum(get_count(node, count_filter) for node in nodes)
    if total == 0:
        return nodes

    main = []
    small = []
    for node in nodes:
        ratio = get_count(node, count_filter) / total
        if ratio < OTHERS_THRESHOLD and len(nodes) > OTHERS_MIN_SIBLINGS:
            small.append(node)
        else:
            main.append(node)

    if len(small) < 2:
        return nodes

    logger.debug(f"Bucketing {len(small)} of {len(nodes)} nodes into '{others_label}'")
    return main + [OthersNode(name=others_label, children=small)]
