from enum import Enum


class SyncStatus(str, Enum):
    MATCHED = "matched"
    REGISTRY_ONLY = "registry_only"
    LIVE_ONLY = "live_only"


class SyncAction(str, Enum):
    NONE = "none"
    PUSH = "push"
    REMOVE_LIVE = "remove_live"
    REMOVE_FILE = "remove_file"
    AWAIT_KEY = "await_key"
    ADOPT_OR_REMOVE = "adopt_or_remove"


class ClientStatusFilter(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class SectionKind(str, Enum):
    INTERFACE = "interface"
    PEER = "peer"
