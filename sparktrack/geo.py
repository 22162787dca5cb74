import ipaddress
import logging
import os

import geoip2.database
import geoip2.errors
import httpx

from sparktrack import config

logger = logging.getLogger(__name__)

LOCAL_LABEL = "Localhost/Development"
UNKNOWN = "Unknown"

PRIMARY_URL = "https://ip-api.com/json/{ip}?fields=status,message,city,regionName,country"
SECONDARY_URL = "https://ipapi.co/{ip}/json/"

LOCAL_NETWORKS = [
    ipaddress.ip_network(n)
    for n in ("127.0.0.0/8", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "::1/128")
]


def is_local_address(raw_ip: str | None) -> bool:
    """
    Loopback / private ranges, plus the placeholders we get when no address
    could be determined.
    """
    raw_ip = (raw_ip or "").strip()
    if not raw_ip or raw_ip == UNKNOWN:
        return True
    try:
        ip_obj = ipaddress.ip_address(raw_ip)
    except ValueError:
        return False
    if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped:
        ip_obj = ip_obj.ipv4_mapped
    return any(ip_obj in net for net in LOCAL_NETWORKS if net.version == ip_obj.version)


def join_fields(*parts) -> str:
    return ", ".join(str(p) for p in parts if p)


class Locator:
    """
    Best-effort "City, Region, Country" for an address.

    Order: local MaxMind City database (if present), ip-api.com, ipapi.co.
    Every failure degrades to "Unknown"; nothing is raised to the caller.
    """

    def __init__(self, timeout: float = config.GEO_TIMEOUT,
                 geoip_db_path: str | None = config.GEOIP_DB_PATH,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.geoip_db_path = geoip_db_path
        self.transport = transport
        self._reader = None

    def get_geoip_reader(self):
        if self._reader is None and self.geoip_db_path and os.path.exists(self.geoip_db_path):
            try:
                self._reader = geoip2.database.Reader(self.geoip_db_path)
            except Exception as e:
                logger.warning("cannot open GeoIP database %s: %s", self.geoip_db_path, e)
                self.geoip_db_path = None
        return self._reader

    def lookup_local_db(self, raw_ip: str) -> str:
        reader = self.get_geoip_reader()
        if reader is None:
            return ""
        try:
            resp = reader.city(raw_ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return ""
        except Exception as e:
            # e.g. a Country database behind GEOIP_DB_PATH, or a corrupt record
            logger.warning("GeoIP lookup for %s failed, skipping local database: %s", raw_ip, e)
            self._reader = None
            self.geoip_db_path = None
            return ""
        return join_fields(resp.city.name, resp.subdivisions.most_specific.name, resp.country.name)

    async def fetch_json(self, client: httpx.AsyncClient, url: str) -> dict | None:
        try:
            r = await client.get(url, headers={"Accept": "application/json"})
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("geo lookup %s failed: %s", url, e)
            return None
        return data if isinstance(data, dict) else None

    async def lookup_primary(self, client, raw_ip: str) -> str:
        data = await self.fetch_json(client, PRIMARY_URL.format(ip=raw_ip))
        if not data or data.get("status") != "success":
            return ""
        return join_fields(data.get("city"), data.get("regionName"), data.get("country"))

    async def lookup_secondary(self, client, raw_ip: str) -> str:
        data = await self.fetch_json(client, SECONDARY_URL.format(ip=raw_ip))
        if not data or data.get("error"):
            return ""
        return join_fields(data.get("city"), data.get("region"), data.get("country_name"))

    async def resolve_location(self, raw_ip: str | None) -> str:
        if is_local_address(raw_ip):
            return LOCAL_LABEL
        raw_ip = raw_ip.strip()

        location = self.lookup_local_db(raw_ip)
        if location:
            return location

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            location = await self.lookup_primary(client, raw_ip)
            if not location:
                location = await self.lookup_secondary(client, raw_ip)

        if location:
            logger.info("Location resolved for %s: %s", raw_ip, location)
            return location
        return UNKNOWN

