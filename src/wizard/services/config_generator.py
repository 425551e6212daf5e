"""Deployment configuration validation and .env / compose rendering."""

import errno
import json
import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from wizard.models.results import ConfigValidation, SaveResult
from wizard.models.status import ErrorCategory
from wizard.services.profiles import (
    ARCHIVE_PROFILES,
    CONTAINER_IMAGES,
    INDEXER_PROFILES,
    MINING_PROFILES,
    builds_for_profiles,
    containers_for_profiles,
    unknown_profiles,
)


class PortConfig(BaseModel):
    rpc: int = Field(16110, gt=0, lt=65536, description="Node gRPC port")
    p2p: int = Field(16111, gt=0, lt=65536, description="Node P2P port")


class InstallConfig(BaseModel):
    """User-supplied install configuration.

    Unknown keys are kept; upper-case ones (e.g. KASPA_NODE_MEMORY_LIMIT) are
    passed straight through to the .env file.

    Example:
        {
            "network": "mainnet",
            "ports": {"rpc": 16110, "p2p": 16111},
            "publicNode": false
        }
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    network: Literal["mainnet", "testnet-10", "testnet-11"] = "mainnet"
    ports: PortConfig = Field(default_factory=PortConfig)
    public_node: bool = Field(False, alias="publicNode")
    external_ip: Optional[str] = Field(None, alias="externalIp")
    node_mode: Literal["local", "remote"] = Field("local", alias="nodeMode")
    remote_node_url: Optional[str] = Field(None, alias="remoteNodeUrl")
    mining_address: Optional[str] = Field(None, alias="miningAddress")

    @field_validator("mining_address")
    @classmethod
    def kaspa_address(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("kaspa:", "kaspatest:")):
            raise ValueError("Mining address must start with 'kaspa:' or 'kaspatest:'")
        return v

    @model_validator(mode="after")
    def distinct_ports(self) -> "InstallConfig":
        if self.ports.rpc == self.ports.p2p:
            raise ValueError("RPC and P2P ports must differ")
        if self.node_mode == "remote" and not self.remote_node_url:
            raise ValueError("remoteNodeUrl is required when nodeMode is 'remote'")
        return self

    def env_overrides(self) -> dict[str, Any]:
        return {k: v for k, v in (self.model_extra or {}).items() if k.isupper()}


class ConfigGenerator:
    """Validates install config and renders the deployment files."""

    def __init__(self):
        self.logger = logging.getLogger("wizard.config_generator")

    def validate_config(self, config: dict[str, Any], profiles: Optional[list[str]] = None) -> ConfigValidation:
        """Validate raw config (and profile ids, when given).

        Returns:
            ConfigValidation with the normalized config on success
        """
        errors: list[str] = []

        if profiles is not None:
            if not profiles:
                errors.append("profiles: at least one profile must be selected")
            unknown = unknown_profiles(profiles)
            if unknown:
                errors.append(f"profiles: unknown profile(s) {', '.join(unknown)}")

        parsed: Optional[InstallConfig] = None
        try:
            parsed = InstallConfig.model_validate(config)
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(part) for part in err["loc"]) or "config"
                errors.append(f"{loc}: {err['msg']}")

        if parsed is not None and profiles and any(p in MINING_PROFILES for p in profiles):
            if not parsed.mining_address:
                errors.append("miningAddress: required for the mining profile")

        if errors:
            self.logger.warning(f"Configuration invalid: {errors}")
            return ConfigValidation(valid=False, errors=errors)

        return ConfigValidation(valid=True, config=parsed.model_dump(mode="json", by_alias=True))

    def snapshot(self, config: InstallConfig, profiles: list[str]) -> dict[str, Any]:
        """Resolved settings recorded in the installation state."""
        return {
            "network": config.network,
            "ports": config.ports.model_dump(),
            "publicNode": config.public_node,
            "hasIndexers": any(p in INDEXER_PROFILES for p in profiles),
            "hasArchive": any(p in ARCHIVE_PROFILES for p in profiles),
            "hasMining": any(p in MINING_PROFILES for p in profiles),
        }

    def generate_env_file(self, config: InstallConfig, profiles: list[str]) -> str:
        values: dict[str, Any] = {
            "KASPA_NETWORK": config.network,
            "KASPA_NODE_RPC_PORT": config.ports.rpc,
            "KASPA_NODE_P2P_PORT": config.ports.p2p,
            "PUBLIC_NODE": str(config.public_node).lower(),
            "KASPA_NODE_MODE": config.node_mode,
            "COMPOSE_PROFILES": ",".join(profiles),
        }
        if config.remote_node_url:
            values["REMOTE_KASPA_NODE_URL"] = config.remote_node_url
        if config.external_ip:
            values["EXTERNAL_IP"] = config.external_ip
        if config.mining_address:
            values["MINING_ADDRESS"] = config.mining_address
        values.update(config.env_overrides())

        lines = ["# Generated by the Kaspa All-in-One installation wizard"]
        lines.extend(f"{key}={value}" for key, value in values.items())
        return "\n".join(lines) + "\n"

    def generate_docker_compose(self, config: InstallConfig, profiles: list[str]) -> str:
        """Render the compose document as JSON (a subset of YAML)."""
        builds = set(builds_for_profiles(profiles))
        services: dict[str, Any] = {}

        for name in containers_for_profiles(profiles):
            service: dict[str, Any] = {
                "container_name": name,
                "restart": "unless-stopped",
                "env_file": [".env"],
            }
            if name in builds:
                service["build"] = {"context": f"./services/{name}"}
            else:
                service["image"] = CONTAINER_IMAGES.get(name, f"{name}:latest")

            if name in ("kaspa-node", "kaspa-archive-node"):
                service["ports"] = [
                    f"{config.ports.rpc}:16110",
                    f"{config.ports.p2p}:16111",
                ]
                service["volumes"] = [f"{name}-data:/app/data"]
            services[name] = service

        document: dict[str, Any] = {"services": services}
        volumes = {f"{n}-data": {} for n in services if "volumes" in services[n]}
        if volumes:
            document["volumes"] = volumes
        return json.dumps(document, indent=2) + "\n"

    async def _save(self, content: str, target: Path) -> SaveResult:
        target = Path(target)
        tmp_path = target.with_name(f"{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(content)
            os.replace(tmp_path, target)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            self.logger.error(f"Failed to write {target}: {e}")
            if e.errno in (errno.EACCES, errno.EPERM):
                category = ErrorCategory.PERMISSION_ERROR
            elif e.errno == errno.ENOSPC:
                category = ErrorCategory.DISK_SPACE
            else:
                category = ErrorCategory.UNKNOWN
            return SaveResult(success=False, error=str(e), path=str(target), category=category)

        self.logger.info(f"Wrote {target}")
        return SaveResult(success=True, path=str(target))

    async def save_env_file(self, content: str, path: Path) -> SaveResult:
        return await self._save(content, path)

    async def save_docker_compose(self, content: str, path: Path) -> SaveResult:
        return await self._save(content, path)
