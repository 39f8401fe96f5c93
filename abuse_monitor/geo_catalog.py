"""
Geo / ASN Catalog

Loads the ASN and country range datasets once at startup and answers
read-only lookups for the rest of the process lifetime.

CSV formats:
    ASN:     start_ip,end_ip,asn,name,domain
    Country: start_ip,end_ip,country,country_name,continent,continent_name
"""

import csv
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import geoip2.database
import geoip2.errors

from .config import RANGE_CACHE_SIZE
from .range_table import Range, RangeTable, ip_to_int

log = logging.getLogger("AbuseMonitor.GeoCatalog")


@dataclass(frozen=True)
class AsnInfo:
    asn: str
    name: str = ''
    domain: str = ''


@dataclass(frozen=True)
class CountryInfo:
    country: str
    country_name: str = ''
    continent: str = ''
    continent_name: str = ''


def _read_csv_ranges(path: str, build_value) -> List[Range]:
    ranges = []
    skipped = 0
    with open(path, newline='', encoding='utf-8') as f:
        for row in csv.DictReader(f):
            try:
                start = ip_to_int(row['start_ip'])
                end = ip_to_int(row['end_ip'])
                value = build_value(row)
            except (KeyError, ValueError, TypeError, AttributeError):
                # IPv6 rows and broken lines end up here
                skipped += 1
                continue
            ranges.append(Range(start, end, value))
    if skipped:
        log.debug(f"Skipped {skipped} unusable rows in '{path}'.")
    return ranges


def load_asn_ranges(path: str) -> List[Range]:
    return _read_csv_ranges(path, lambda row: AsnInfo(
        asn=row['asn'], name=row.get('name') or '', domain=row.get('domain') or ''))


def load_country_ranges(path: str) -> List[Range]:
    return _read_csv_ranges(path, lambda row: CountryInfo(
        country=row['country'],
        country_name=row.get('country_name') or '',
        continent=row.get('continent') or '',
        continent_name=row.get('continent_name') or ''))


class GeoAsnCatalog:
    """ASN and country range tables, with an optional GeoIP2 country fallback."""

    def __init__(self, asn_table: Optional[RangeTable] = None, country_table: Optional[RangeTable] = None,
                 geoip_reader=None):
        self.asn_table = asn_table if asn_table is not None else RangeTable()
        self.country_table = country_table if country_table is not None else RangeTable()
        self.geoip_reader = geoip_reader
        self._asn_first_range: Dict[str, Range] = {}
        self._index_asns()

    @classmethod
    def from_files(cls, asn_path: str, country_path: str, geoip_path: str = '',
                   cache_size: int = RANGE_CACHE_SIZE) -> 'GeoAsnCatalog':
        """Blocking; meant to be run once at startup (in an executor from async code)."""
        asn_table = RangeTable(load_asn_ranges(asn_path), cache_size=cache_size)
        log.info(f"Loaded ASN data with {len(asn_table)} entries.")
        country_table = RangeTable(load_country_ranges(country_path), cache_size=cache_size)
        log.info(f"Loaded country data with {len(country_table)} entries.")

        geoip_reader = None
        if geoip_path:
            try:
                geoip_reader = geoip2.database.Reader(geoip_path)
                log.info("GeoIP database loaded successfully.")
            except (FileNotFoundError, ValueError) as e:
                log.warning(f"Could not load GeoIP database '{geoip_path}': {e}. Country fallback disabled.")
        return cls(asn_table, country_table, geoip_reader)

    def _index_asns(self):
        # Table order is ascending by start, so the first range seen per ASN is its lowest one.
        for r in self.asn_table:
            self._asn_first_range.setdefault(r.value.asn, r)

    def lookup_asn(self, ip: str) -> Optional[str]:
        info, found = self.asn_table.lookup(ip)
        return info.asn if found else None

    def lookup_asn_info(self, ip: str) -> Optional[AsnInfo]:
        info, found = self.asn_table.lookup(ip)
        return info if found else None

    def lookup_country(self, ip: str) -> Optional[str]:
        info, found = self.country_table.lookup(ip)
        if found:
            return info.country
        if self.geoip_reader is not None:
            try:
                return self.geoip_reader.city(ip).country.iso_code
            except (geoip2.errors.AddressNotFoundError, ValueError):
                return None
        return None

    def lookup_asn_to_country(self, asn: str) -> Optional[str]:
        """Country of the lowest address range announced by an ASN."""
        first = self._asn_first_range.get(asn)
        if first is None:
            return None
        info, found = self.country_table.classify(first.start)
        return info.country if found else None

    def close(self):
        if self.geoip_reader is not None and hasattr(self.geoip_reader, 'close'):
            self.geoip_reader.close()
            log.info("GeoIP database reader closed.")
