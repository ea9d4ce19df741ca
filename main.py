import enum
import ipaddress
import json
import logging
import os
import sys
import tempfile
import time
from dataclasses import asdict, dataclass, field

import requests
import urllib3

# Environment variables
UNIFI_HOST = os.getenv("UNIFI_HOST") or None
UNIFI_API_KEY = os.getenv("UNIFI_API_KEY") or None
UNIFI_SITE = os.getenv("UNIFI_SITE") or "default"
CONFIG_PATH = os.getenv("CONFIG_PATH") or "/app/clients.json"
LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

# Interval in seconds (default 3600 = 1h)
DEFAULT_CHECK_INTERVAL = 3600

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


def parse_bool(value: str | None, default: bool) -> bool:
    """Parse a boolean env value; unknown spellings keep the default."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def parse_interval(value: str | None) -> int:
    """Return the check interval in seconds.

    Empty means the default. Anything that is not a positive integer logs a
    warning and also falls back to the default.
    """
    if not value:
        return DEFAULT_CHECK_INTERVAL
    # same digits-only rule as Go strconv.Atoi; rejects " 60 " and "1_000"
    seconds = int(value) if value.isascii() and value.isdigit() else 0
    if seconds <= 0:
        logging.warning(f"Invalid CHECK_INTERVAL {value!r}, using default {DEFAULT_CHECK_INTERVAL}s")
        return DEFAULT_CHECK_INTERVAL
    return seconds


VERIFY_SSL = parse_bool(os.getenv("VERIFY_SSL"), True)
CHECK_INTERVAL = os.getenv("CHECK_INTERVAL") or None


class TransportError(Exception):
    """Any failed call to the UniFi controller."""


class ConfigError(ValueError):
    """The clients file exists but does not hold a usable config."""


class NoGlobalAddress(ValueError):
    pass


@dataclass
class TrackedClient:
    """A device whose global IPv6 is mirrored into a firewall group."""
    mac: str
    group_id: str
    last_ipv6: str = ""


@dataclass
class Config:
    clients: list[TrackedClient] = field(default_factory=list)


@dataclass
class UniFiClient:
    mac: str
    ipv6_addresses: list[str] = field(default_factory=list)


@dataclass
class FirewallGroupUpdate:
    """Body of a firewall group PUT. Replaces the whole member list."""
    group_members: list[str]


class Outcome(enum.Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    NOT_FOUND = "not_found"
    NO_GLOBAL_ADDRESS = "no_global_address"
    FAILED = "failed"


# ---- Tracking store ----

def load_config(path: str) -> Config:
    """Read the clients file.

    Raises OSError when the file cannot be read and ConfigError when its
    content is not a {"clients": [...]} document.
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")

    rows = data.get("clients")
    if rows is None:
        rows = []
    if not isinstance(rows, list):
        raise ConfigError(f"'clients' in {path} must be a list")

    clients = []
    for i, row in enumerate(rows):
        if not isinstance(row, dict):
            raise ConfigError(f"clients[{i}] in {path} must be an object")
        mac = row.get("mac")
        group_id = row.get("group_id")
        last_ipv6 = row.get("last_ipv6") or ""
        if not isinstance(mac, str) or not mac:
            raise ConfigError(f"clients[{i}] in {path} has no mac")
        if not isinstance(group_id, str) or not group_id:
            raise ConfigError(f"clients[{i}] in {path} has no group_id")
        if not isinstance(last_ipv6, str):
            raise ConfigError(f"clients[{i}].last_ipv6 in {path} must be a string")
        clients.append(TrackedClient(mac=mac, group_id=group_id, last_ipv6=last_ipv6))

    return Config(clients=clients)


def save_config(path: str, cfg: Config):
    """Overwrite the clients file with the complete config.

    Writes a temporary file next to `path` and moves it into place, so the
    file on disk is always either the old or the new document.
    """
    data = json.dumps(asdict(cfg), indent=2)
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".clients-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data + "\n")
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise


# ---- Address selection ----

def get_global_ipv6(addresses: list[str]) -> str:
    """Pick the first global IPv6 out of the controller's address list.

    Link-local is detected by the textual fe80 prefix only, so other
    addresses inside fe80::/10 are still treated as global.
    """
    for ip in addresses:
        ip = ip.strip()
        if ip.lower().startswith("fe80"):
            continue
        if "%" in ip or ":" not in ip:
            continue
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            continue
        return ip
    raise NoGlobalAddress("no valid global IPv6 found")


# ---- Controller gateway ----

class UniFiController:
    """Minimal client for the two UniFi Network endpoints the updater uses."""

    def __init__(self, host: str, api_key: str, verify_ssl: bool = True, site: str = "default"):
        self.host = host.rstrip("/")
        self.api_key = api_key
        self.verify_ssl = verify_ssl
        self.site = site

    def _url(self, path: str) -> str:
        return f"{self.host}/proxy/network/api/s/{self.site}{path}"

    def request(self, method: str, path: str, payload: dict | None = None) -> requests.Response:
        """Call the controller; connection errors and HTTP >= 300 raise TransportError."""
        url = self._url(path)
        headers = {
            "X-API-KEY": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            r = requests.request(method, url, headers=headers, json=payload, verify=self.verify_ssl)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        if r.status_code >= 300:
            raise TransportError(f"{method} {url} failed (HTTP {r.status_code}): {r.text}")

        return r

    def get_clients(self) -> list[UniFiClient]:
        r = self.request("GET", "/stat/sta")
        try:
            payload = r.json()
        except ValueError as e:
            raise TransportError(f"Client list is not valid JSON: {r.text}") from e

        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise TransportError(f"Unexpected client list payload: {payload!r}")

        clients = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            mac = row.get("mac")
            if not isinstance(mac, str) or not mac:
                continue
            addresses = row.get("ipv6_addresses") or []
            if not isinstance(addresses, list):
                addresses = []
            clients.append(UniFiClient(
                mac=mac,
                ipv6_addresses=[a for a in addresses if isinstance(a, str)],
            ))
        return clients

    def set_firewall_group_members(self, group_id: str, members: set[str]):
        """Replace the members of a firewall group with exactly `members`."""
        body = FirewallGroupUpdate(group_members=sorted(members))
        self.request("PUT", f"/rest/firewallgroup/{group_id}", payload=asdict(body))


# ---- Updater ----

def find_client(clients: list[UniFiClient], mac: str) -> UniFiClient | None:
    mac = mac.lower()
    for c in clients:
        if c.mac.lower() == mac:
            return c
    return None


def run_updater(controller: UniFiController, config_path: str) -> list[Outcome]:
    """Run one update cycle and return the outcome per tracked client.

    An unreadable config or a failed client fetch aborts the cycle and
    returns an empty list. Everything else is handled per client.
    """
    try:
        cfg = load_config(config_path)
    except (OSError, ValueError) as e:
        logging.error(f"Failed to load config: {e}")
        return []

    try:
        all_clients = controller.get_clients()
    except TransportError as e:
        logging.error(f"Failed to get UniFi clients: {e}")
        return []

    outcomes = []
    for c in cfg.clients:
        found = find_client(all_clients, c.mac)
        if found is None:
            logging.warning(f"Client not found: {c.mac}")
            outcomes.append(Outcome.NOT_FOUND)
            continue

        try:
            ipv6 = get_global_ipv6(found.ipv6_addresses)
        except NoGlobalAddress as e:
            logging.warning(f"No global IPv6 for {c.mac} ({e})")
            outcomes.append(Outcome.NO_GLOBAL_ADDRESS)
            continue

        if ipv6 == c.last_ipv6:
            logging.info(f"IPv6 unchanged for {c.mac} ({ipv6})")
            outcomes.append(Outcome.UNCHANGED)
            continue

        logging.info(f"IPv6 changed for {c.mac}: {c.last_ipv6 or '-'} -> {ipv6}")
        try:
            controller.set_firewall_group_members(c.group_id, {ipv6})
        except TransportError as e:
            logging.error(f"Failed to update firewall group {c.group_id}: {e}")
            outcomes.append(Outcome.FAILED)
            continue

        c.last_ipv6 = ipv6
        try:
            save_config(config_path, cfg)
        except OSError as e:
            # the firewall group is already updated; disk catches up on the next save
            logging.error(f"Failed to save config: {e}")
        else:
            logging.info(f"Updated firewall group {c.group_id} to {ipv6} and saved new address")
        outcomes.append(Outcome.UPDATED)

    return outcomes


def run_forever(cycle, interval: float, sleep=time.sleep):
    """Run `cycle` now and then again `interval` seconds after each one ends."""
    while True:
        try:
            cycle()
        except Exception:
            logging.exception("Update cycle failed")
        sleep(interval)


def verify_env() -> bool:
    if not UNIFI_HOST: return False
    if not UNIFI_API_KEY: return False
    return True


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main():
    setup_logging(LOG_LEVEL)
    logging.info("loading environment...")

    if not verify_env():
        logging.error("UNIFI_HOST and UNIFI_API_KEY environment variables are required")
        sys.exit(1)

    interval = parse_interval(CHECK_INTERVAL)

    if not VERIFY_SSL:
        urllib3.disable_warnings()

    logging.info("Starting UniFi IPv6 firewall updater...")
    logging.info("UNIFI_HOST: {}".format(UNIFI_HOST))
    logging.info("UNIFI_SITE: {}".format(UNIFI_SITE))
    logging.info("CONFIG_PATH: {}".format(CONFIG_PATH))
    logging.info("VERIFY_SSL: {}".format(VERIFY_SSL))
    logging.info(f"Running updater every {interval}s")

    controller = UniFiController(UNIFI_HOST, UNIFI_API_KEY, verify_ssl=VERIFY_SSL, site=UNIFI_SITE)
    run_forever(lambda: run_updater(controller, CONFIG_PATH), interval)


if __name__ == "__main__":
    main()
