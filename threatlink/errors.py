"""Exception hierarchy shared by the threatlink modules."""


class ThreatLinkError(Exception):
    """Base class for every error threatlink raises."""
    pass
