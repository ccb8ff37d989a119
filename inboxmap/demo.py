"""
Demo mailbox, shown without signing in
"""

from typing import Dict, List

from inboxmap.models import DomainColorInfo, DomainNode, EnrichmentConfig, SenderNode, SubdomainNode


# (domain, brand color, {subdomain: [(sender, display name, unread, read)]})
DEMO_MAILBOX = [
    ("linkedin.com", "#0a66c2", {
        "messages.linkedin.com": [
            ("john.doe@messages.linkedin.com", "John Doe", 45, 120),
            ("jane.smith@messages.linkedin.com", "Jane Smith", 20, 80),
        ],
        "notifications.linkedin.com": [("alerts@notifications.linkedin.com", "LinkedIn Alerts", 150, 300)],
    }),
    ("github.com", "#24292e", {
        "notifications.github.com": [
            ("ci-actions@notifications.github.com", "CI Actions", 80, 150),
            ("mentions@notifications.github.com", "Mentions", 30, 40),
        ],
        "noreply.github.com": [("marketing@noreply.github.com", "GitHub Marketing", 5, 10)],
    }),
    ("amazon.com", "#ff9900", {
        "orders.amazon.com": [
            ("update@orders.amazon.com", "Order Updates", 12, 50),
            ("tracking@orders.amazon.com", "Tracking", 8, 20),
        ],
        "promotions.amazon.com": [("deals@promotions.amazon.com", "Deals", 90, 110)],
    }),
    ("google.com", "#ea4335", {
        "accounts.google.com": [
            ("security-alerts@accounts.google.com", "Security Alerts", 2, 15),
            ("new-login@accounts.google.com", "Login Alerts", 1, 5),
        ],
        "workspace.google.com": [("updates@workspace.google.com", "Workspace Updates", 25, 80)],
    }),
    ("figma.com", "#f24e1e", {"comments.figma.com": [("team-mentions@comments.figma.com", "Team Mentions", 40, 60)]}),
    ("notion.so", "#000000", {"notify.notion.so": [("updates@notify.notion.so", "Page Updates", 15, 35)]}),
    ("stripe.com", "#635bff", {"receipts.stripe.com": [("receipts@receipts.stripe.com", "Payment Receipts", 3, 22)]}),
    ("vercel.com", "#000000", {
        "notifications.vercel.com": [("deploys@notifications.vercel.com", "Deploy Notifications", 6, 18)],
    }),
    ("slack.com", "#4a154b", {"notifications.slack.com": [("digest@notifications.slack.com", "Daily Digest", 2, 30)]}),
]


def demo_hierarchy() -> List[DomainNode]:
    return [
        DomainNode(
            id=domain,
            name=domain,
            color=color,
            children=[
                SubdomainNode(
                    id=subdomain,
                    name=subdomain,
                    children=[SenderNode(id=sender, name=name, unread=unread, read=read)
                              for sender, name, unread, read in senders]
                )
                for subdomain, senders in subdomains.items()
            ]
        )
        for domain, color, subdomains in DEMO_MAILBOX
    ]


def demo_domain_colors() -> Dict[str, DomainColorInfo]:
    """Brand colors for the demo domains, so no favicon fetch is needed"""
    url = EnrichmentConfig().primary_url
    return {
        domain: DomainColorInfo(color=color, favicon_url=url.format(domain=domain))
        for domain, color, _ in DEMO_MAILBOX
    }
