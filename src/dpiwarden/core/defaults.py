"""
Default appdata for a fresh installation.

Seeding writes registry metadata only; the content is materialized by the
forced refresh that follows, so an offline first start still leaves a usable
(if empty) configuration behind.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from dpiwarden.core.models import BlobEntry, ListEntry, LuaEntry, ProfileEntry
from dpiwarden.engine.platform import HostPlatform
from dpiwarden.storage.registry import DEFAULT_UPDATE_INTERVAL_MS, ResourceRegistry, SettingKey

logger = logging.getLogger(__name__)

_RESOURCES = "https://raw.githubusercontent.com/Greezor/bununban/refs/heads/master/resources"
_ZAPRET2 = "https://raw.githubusercontent.com/bol-van/zapret2/refs/heads/master"
_LISTS = "https://raw.githubusercontent.com/ankddev/zapret-discord-youtube/refs/heads/main/lists"

DEFAULT_PROFILES: Tuple[str, ...] = (
    "quic",
    "discord",
    "stun",
    "wireguard",
    "unknown-udp",
    "google",
    "tls",
)

DEFAULT_LISTS: Dict[str, str] = {
    "rulist": "https://raw.githubusercontent.com/bol-van/rulist/refs/heads/main/reestr_hostname.txt",
    "apple": f"{_LISTS}/list-apple.txt",
    "cloudflare": f"{_LISTS}/list-cloudflare.txt",
    "discord": f"{_LISTS}/list-discord.txt",
    "instagram": f"{_LISTS}/list-instagram.txt",
    "meta": f"{_LISTS}/list-meta.txt",
    "rutor": f"{_LISTS}/list-rutor.txt",
    "rutracker": f"{_LISTS}/list-rutracker.txt",
    "speedtest": f"{_LISTS}/list-speedtest.txt",
    "telegram": f"{_LISTS}/list-telegram.txt",
    "tor": f"{_LISTS}/list-tor.txt",
    "twitter": f"{_LISTS}/list-twitter.txt",
    "viber": f"{_LISTS}/list-viber.txt",
    "riotgames": f"{_RESOURCES}/lists/riotgames.txt",
    "roblox": f"{_RESOURCES}/lists/roblox.txt",
    "vrchat": f"{_RESOURCES}/lists/vrchat.txt",
    "whatsapp": f"{_RESOURCES}/lists/whatsapp.txt",
    "google": f"{_RESOURCES}/lists/google.txt",
    "custom": f"{_RESOURCES}/lists/custom.txt",
}

DEFAULT_LUA: Dict[str, str] = {
    "zapret-lib": f"{_ZAPRET2}/lua/zapret-lib.lua",
    "zapret-antidpi": f"{_ZAPRET2}/lua/zapret-antidpi.lua",
    "zapret-auto": f"{_ZAPRET2}/lua/zapret-auto.lua",
    "bununban-lib": f"{_RESOURCES}/lua/bununban-lib.lua",
}

DEFAULT_BLOBS: Dict[str, str] = {
    "quic_initial_www_google_com": f"{_ZAPRET2}/files/fake/quic_initial_www_google_com.bin",
    "tls_clienthello_www_google_com": f"{_ZAPRET2}/files/fake/tls_clienthello_www_google_com.bin",
}

WINDOWS_STARTUP_ARGS = "--wf-tcp-out=80,443-65535 --wf-udp-out=80,443-65535"


def default_profiles() -> List[ProfileEntry]:
    return [
        ProfileEntry(name=name, active=True, sync_url=f"{_RESOURCES}/profiles/{name}.sh")
        for name in DEFAULT_PROFILES
    ]


def default_settings(host: HostPlatform) -> Dict[str, object]:
    settings: Dict[str, object] = {
        SettingKey.HOSTNAME: "0.0.0.0",
        SettingKey.PORT: "8008",
        SettingKey.UPDATE_SELF: True,
        SettingKey.UPDATE_ENGINE: True,
        SettingKey.UPDATE_PROFILES: True,
        SettingKey.UPDATE_LISTS: True,
        SettingKey.UPDATE_LUA: True,
        SettingKey.UPDATE_BLOBS: True,
        SettingKey.UPDATE_INTERVAL: DEFAULT_UPDATE_INTERVAL_MS,
        SettingKey.ENGINE_DEBUG: False,
    }
    if host.is_windows:
        settings[SettingKey.HOSTNAME] = "localhost"
        settings[SettingKey.STARTUP_ARGS] = WINDOWS_STARTUP_ARGS
    return settings


async def seed_default_appdata(registry: ResourceRegistry, host: HostPlatform) -> None:
    """Write the default profiles, resources and settings into *registry*."""
    logger.info("Creating default appdata in %s", registry.paths.root)

    await registry.profiles.replace(default_profiles())

    for name, url in DEFAULT_LISTS.items():
        await registry.lists.store.set(name, ListEntry(sync_url=url).to_store())
    for name, url in DEFAULT_LUA.items():
        await registry.lua.store.set(name, LuaEntry(active=True, sync_url=url).to_store())
    for name, url in DEFAULT_BLOBS.items():
        await registry.blobs.store.set(name, BlobEntry(active=True, sync_url=url).to_store())

    await registry.settings.update(default_settings(host))


async def refresh_all(registry: ResourceRegistry) -> None:
    """Materialize every synced resource regardless of the update flags."""
    await registry.profiles.sync()
    for namespace in ("lists", "lua", "blobs"):
        await registry.collection(namespace).sync()
