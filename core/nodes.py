"""
core/nodes.py -- Profile -> gateway node mapping.

A node is not a stored entity; it is derived from the profile configuration.
Each profile lists its node URLs. Only the first one is consumed today, but
callers always go through serving_nodes(), which returns a list, so that
multi-node profiles only require a change here.
"""

import logging
from urllib.parse import urlparse

from core.config import ProfileConfig
from core.errors import ConfigurationError

logger = logging.getLogger("vpnwarden.nodes")


class NodeDirectory:
    def __init__(self, profiles: list[ProfileConfig]) -> None:
        self._profiles: dict[str, ProfileConfig] = {}
        for profile in profiles:
            if profile.profile_id in self._profiles:
                raise ConfigurationError(f"duplicate profile_id '{profile.profile_id}'")
            if not profile.node_urls:
                raise ConfigurationError(f"profile '{profile.profile_id}' has no node_urls")
            for url in profile.node_urls:
                parsed = urlparse(url)
                if parsed.scheme not in ("http", "https") or not parsed.netloc:
                    raise ConfigurationError(f"profile '{profile.profile_id}' has invalid node URL '{url}'")
            self._profiles[profile.profile_id] = profile

    @classmethod
    def from_settings(cls, settings) -> "NodeDirectory":
        directory = cls(settings.profiles)
        if not directory.profile_ids():
            raise ConfigurationError("no VPN profiles configured (set PROFILES)")
        return directory

    def profile_ids(self, vpn_proto: str = "") -> list[str]:
        return [p.profile_id for p in self._profiles.values() if not vpn_proto or p.vpn_proto == vpn_proto]

    def profile(self, profile_id: str) -> ProfileConfig:
        try:
            return self._profiles[profile_id]
        except KeyError:
            raise ConfigurationError(f"unknown profile '{profile_id}'") from None

    def profile_to_node_url(self, profile_id: str) -> str:
        return self.profile(profile_id).node_urls[0]

    def serving_nodes(self, profile_id: str) -> list[str]:
        """Return the node URLs that currently serve profile_id.

        Single-node-per-profile today: the first configured URL.
        """
        return [self.profile_to_node_url(profile_id)]

    def node_urls(self) -> list[str]:
        """Every node serving at least one profile, in configuration order."""
        seen: list[str] = []
        for profile_id in self._profiles:
            for url in self.serving_nodes(profile_id):
                if url not in seen:
                    seen.append(url)
        return seen

    def profiles_on_node(self, node_url: str, vpn_proto: str) -> list[str]:
        return [pid for pid in self.profile_ids(vpn_proto) if node_url in self.serving_nodes(pid)]
