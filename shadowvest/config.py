"""
ShadowVest Service Configuration

Everything a claim service needs is carried here and passed into
constructors by the entry point; nothing is read from module state.
"""

from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field, asdict
from typing import List, Optional

import base58
import nacl.signing
from dotenv import load_dotenv

from shadowvest.constants import (
    CLAIM_COMPUTE_TIMEOUT_SEC,
    DEFAULT_CLUSTER_OFFSET,
    DEFAULT_COMMITMENT,
    DEFAULT_COMPRESSED_RPC_URL,
    DEFAULT_ADDRESS_TREE,
    DEFAULT_COMPUTE_TIMEOUT_SEC,
    DEFAULT_LEDGER_RPC_URL,
    DEFAULT_POLL_ATTEMPTS,
    DEFAULT_PROGRAM_ID,
    POLL_INTERVAL_SEC,
    SERVICE_ORG_NAME,
)
from shadowvest.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class RpcConfig:
    """Ledger and compressed-state RPC endpoints."""
    ledger_url: str = DEFAULT_LEDGER_RPC_URL
    compressed_url: str = DEFAULT_COMPRESSED_RPC_URL
    commitment: str = DEFAULT_COMMITMENT
    request_timeout_sec: float = 30.0


@dataclass
class ProgramConfig:
    """Ledger program and compute cluster identifiers."""
    program_id: str = DEFAULT_PROGRAM_ID
    cluster_offset: int = DEFAULT_CLUSTER_OFFSET
    address_tree: str = DEFAULT_ADDRESS_TREE


@dataclass
class ComputeConfig:
    """Confidential computation polling."""
    poll_interval_sec: float = POLL_INTERVAL_SEC
    default_timeout_sec: float = DEFAULT_COMPUTE_TIMEOUT_SEC
    claim_timeout_sec: float = CLAIM_COMPUTE_TIMEOUT_SEC
    max_poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    cluster_public_key: Optional[str] = None    # hex X25519 key


@dataclass
class ServiceConfig:
    """Service identity used as its own administrative context."""
    secret_key: Optional[str] = None     # base58, or JSON byte array
    name: str = SERVICE_ORG_NAME

    def signing_key(self) -> nacl.signing.SigningKey:
        """
        Decode the configured service key.

        Accepts a JSON array of 32 or 64 bytes (seed, or seed || public key)
        or the base58 encoding of the same bytes.
        """
        if not self.secret_key:
            raise ConfigError(["service secret_key is not set"])

        raw = self.secret_key.strip()
        try:
            if raw.startswith("["):
                key_bytes = bytes(json.loads(raw))
            else:
                key_bytes = base58.b58decode(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError([f"service secret_key is not decodable: {e}"]) from e

        if len(key_bytes) not in (32, 64):
            raise ConfigError([f"service secret_key has {len(key_bytes)} bytes, expected 32 or 64"])

        signing_key = nacl.signing.SigningKey(key_bytes[:32])
        if len(key_bytes) == 64 and bytes(signing_key.verify_key) != key_bytes[32:]:
            raise ConfigError(["service secret_key public half does not match its seed"])
        return signing_key


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_size_mb: int = 100
    backup_count: int = 5


@dataclass
class ShadowVestConfig:
    """
    Complete service configuration.
    """
    rpc: RpcConfig = field(default_factory=RpcConfig)
    program: ProgramConfig = field(default_factory=ProgramConfig)
    compute: ComputeConfig = field(default_factory=ComputeConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for name, url in (("ledger_url", self.rpc.ledger_url),
                          ("compressed_url", self.rpc.compressed_url)):
            if not url.startswith(("http://", "https://")):
                errors.append(f"Invalid {name}: {url}")

        if self.rpc.request_timeout_sec <= 0:
            errors.append("request_timeout_sec must be positive")

        try:
            if len(base58.b58decode(self.program.program_id)) != 32:
                errors.append("program_id must decode to 32 bytes")
        except ValueError:
            errors.append(f"program_id is not base58: {self.program.program_id}")

        try:
            if len(base58.b58decode(self.program.address_tree)) != 32:
                errors.append("address_tree must decode to 32 bytes")
        except ValueError:
            errors.append(f"address_tree is not base58: {self.program.address_tree}")

        if self.program.cluster_offset < 0:
            errors.append("cluster_offset cannot be negative")

        if self.compute.poll_interval_sec <= 0:
            errors.append("poll_interval_sec must be positive")
        if self.compute.default_timeout_sec < self.compute.poll_interval_sec:
            errors.append("default_timeout_sec must be at least one poll interval")
        if self.compute.claim_timeout_sec < self.compute.poll_interval_sec:
            errors.append("claim_timeout_sec must be at least one poll interval")
        if self.compute.max_poll_attempts < 1:
            errors.append("max_poll_attempts must be at least 1")
        if self.compute.cluster_public_key is not None:
            try:
                if len(bytes.fromhex(self.compute.cluster_public_key)) != 32:
                    errors.append("cluster_public_key must be 32 bytes")
            except ValueError:
                errors.append("cluster_public_key is not hex")

        return errors

    def require_valid(self) -> "ShadowVestConfig":
        """Raise ConfigError unless validate() is clean."""
        errors = self.validate()
        if errors:
            raise ConfigError(errors)
        return self

    def to_dict(self) -> dict:
        """Export configuration as dictionary (service key redacted)."""
        service = asdict(self.service)
        if service["secret_key"]:
            service["secret_key"] = "<redacted>"
        return {
            "rpc": asdict(self.rpc),
            "program": asdict(self.program),
            "compute": asdict(self.compute),
            "service": service,
            "log": asdict(self.log),
        }

    def save(self, path: str) -> None:
        """Save configuration to file. The service key is never written."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: str) -> "ShadowVestConfig":
        """Load configuration from file."""
        with open(path, 'r') as f:
            data = json.load(f)

        config = cls()

        if "rpc" in data:
            config.rpc = RpcConfig(**data["rpc"])

        if "program" in data:
            config.program = ProgramConfig(**data["program"])

        if "compute" in data:
            config.compute = ComputeConfig(**data["compute"])

        if "service" in data:
            service = dict(data["service"])
            if service.get("secret_key") == "<redacted>":
                service["secret_key"] = None
            config.service = ServiceConfig(**service)

        if "log" in data:
            config.log = LogConfig(**data["log"])

        logger.info(f"Configuration loaded from {path}")
        return config

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "ShadowVestConfig":
        """Build configuration from the environment (and a .env file if present)."""
        load_dotenv(dotenv_path)

        config = cls()
        config.rpc.ledger_url = os.getenv("SOLANA_RPC_URL", config.rpc.ledger_url)
        config.rpc.compressed_url = os.getenv("LIGHT_RPC_URL", config.rpc.compressed_url)
        config.program.program_id = os.getenv("SHADOWVEST_PROGRAM_ID", config.program.program_id)
        offset = os.getenv("ARCIUM_CLUSTER_OFFSET")
        if offset is not None:
            try:
                config.program.cluster_offset = int(offset)
            except ValueError as e:
                raise ConfigError([f"ARCIUM_CLUSTER_OFFSET is not an integer: {offset!r}"]) from e
        config.service.secret_key = os.getenv("SERVICE_KEYPAIR", config.service.secret_key)
        config.compute.cluster_public_key = os.getenv("CLUSTER_PUBLIC_KEY", config.compute.cluster_public_key)
        config.log.level = os.getenv("LOG_LEVEL", config.log.level)
        config.log.file = os.getenv("LOG_FILE", config.log.file)
        return config


def setup_logging(config: LogConfig) -> None:
    """Configure logging based on config."""
    level = getattr(logging, config.level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]

    if config.file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format=config.format,
        handlers=handlers,
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
