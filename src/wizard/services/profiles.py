"""Profile to container/image/build mappings."""

import logging

logger = logging.getLogger("wizard.profiles")

# Containers started for each profile (new 8-profile ids plus legacy ids)
PROFILE_CONTAINERS: dict[str, list[str]] = {
    "kaspa-node": ["kaspa-node"],
    "kasia-app": ["kasia-app"],
    "k-social-app": ["k-social"],
    "kaspa-explorer-bundle": ["kaspa-explorer", "simply-kaspa-indexer", "timescaledb-explorer"],
    "kasia-indexer": ["kasia-indexer"],
    "k-indexer-bundle": ["k-indexer", "timescaledb-kindexer"],
    "kaspa-archive-node": ["kaspa-archive-node"],
    "kaspa-stratum": ["kaspa-stratum"],
    # Legacy
    "core": ["kaspa-node"],
    "kaspa-user-applications": ["kasia-app", "k-social", "kaspa-explorer"],
    "indexer-services": [
        "kasia-indexer",
        "k-indexer",
        "simply-kaspa-indexer",
        "timescaledb-kindexer",
        "timescaledb-explorer",
    ],
    "archive-node": ["kaspa-archive-node"],
    "mining": ["kaspa-stratum"],
}

# Pre-built images pulled from a registry. Services with local Dockerfiles are built instead.
PROFILE_IMAGES: dict[str, list[str]] = {
    "kaspa-node": ["kaspanet/rusty-kaspad:latest"],
    "kasia-app": [],
    "k-social-app": [],
    "kaspa-explorer-bundle": ["timescale/timescaledb:latest-pg16"],
    "kasia-indexer": ["kkluster/kasia-indexer:main"],
    "k-indexer-bundle": ["timescale/timescaledb:latest-pg16"],
    "kaspa-archive-node": ["kaspanet/rusty-kaspad:latest"],
    "kaspa-stratum": [],
    "core": ["kaspanet/rusty-kaspad:latest"],
    "indexer-services": ["timescale/timescaledb:latest-pg16", "kkluster/kasia-indexer:main"],
    "kaspa-user-applications": [],
    "archive-node": ["kaspanet/rusty-kaspad:latest"],
    "mining": [],
}

# Compose services with a local Dockerfile
PROFILE_BUILDS: dict[str, list[str]] = {
    "kaspa-node": [],
    "kasia-app": ["kasia-app"],
    "k-social-app": ["k-social"],
    "kaspa-explorer-bundle": ["kaspa-explorer"],
    "kasia-indexer": [],
    "k-indexer-bundle": ["k-indexer"],
    "kaspa-archive-node": [],
    "kaspa-stratum": ["kaspa-stratum"],
    "core": [],
    "kaspa-user-applications": ["kasia-app", "k-social", "kaspa-explorer"],
    "indexer-services": ["k-indexer"],
    "archive-node": [],
    "mining": ["kaspa-stratum"],
}

# Registry image per container that is not built locally
CONTAINER_IMAGES: dict[str, str] = {
    "kaspa-node": "kaspanet/rusty-kaspad:latest",
    "kaspa-archive-node": "kaspanet/rusty-kaspad:latest",
    "kasia-indexer": "kkluster/kasia-indexer:main",
    "simply-kaspa-indexer": "supertypo/simply-kaspa-indexer:latest",
    "timescaledb-explorer": "timescale/timescaledb:latest-pg16",
    "timescaledb-kindexer": "timescale/timescaledb:latest-pg16",
}

INDEXER_PROFILES = {"kasia-indexer", "k-indexer-bundle", "kaspa-explorer-bundle", "indexer-services"}
ARCHIVE_PROFILES = {"kaspa-archive-node", "archive-node"}
MINING_PROFILES = {"kaspa-stratum", "mining"}

# Profiles whose containers need a TimescaleDB instance
DATABASE_PROFILES = {
    "kaspa-explorer-bundle",
    "k-indexer-bundle",
    "indexer-services",
    "archive-node",
    "kaspa-archive-node",
}


def unknown_profiles(profiles: list[str]) -> list[str]:
    return [p for p in profiles if p not in PROFILE_CONTAINERS]


def _collect(mapping: dict[str, list[str]], profiles: list[str]) -> list[str]:
    """Ordered, de-duplicated union of the mapping's values."""
    seen: dict[str, None] = {}
    for profile in profiles:
        if profile not in mapping:
            logger.warning(f"Unknown profile id: {profile}")
            continue
        for name in mapping[profile]:
            seen.setdefault(name, None)
    return list(seen)


def containers_for_profiles(profiles: list[str]) -> list[str]:
    return _collect(PROFILE_CONTAINERS, profiles)


def images_for_profiles(profiles: list[str]) -> list[str]:
    return _collect(PROFILE_IMAGES, profiles)


def builds_for_profiles(profiles: list[str]) -> list[str]:
    return _collect(PROFILE_BUILDS, profiles)


def needs_database(profiles: list[str]) -> bool:
    return any(p in DATABASE_PROFILES for p in profiles)
