"""Shared record and entry keys to avoid magic strings across reflinks modules."""

from __future__ import annotations

# Override entry keys (JSON wire format of the override collection)
K_ID = "id"
K_COUNTRY_CODE = "countryCode"
K_LINK_TYPE = "linkType"
K_ORIGINAL_URL = "originalUrl"
K_CUSTOM_URL = "customUrl"
K_TITLE = "title"
K_NOTES = "notes"
K_DATE_PROVIDED = "dateProvided"
K_LAST_UPDATED = "lastUpdated"
K_IS_ACTIVE = "isActive"

# Compliance record keys
K_COUNTRY_ID = "countryId"
K_COUNTRY_NAME = "countryName"
K_ISO_CODE3 = "isoCode3"
K_NAME = "name"
K_E_INVOICING = "eInvoicing"
K_CHANNELS = ("b2g", "b2b", "b2c", "periodic")
K_LEGISLATION = "legislation"
K_OFFICIAL_LINK = "officialLink"
K_SPECIFICATION_LINK = "specificationLink"
K_SPECIFICATIONS = "specifications"
K_FORMATS = "formats"
K_SPEC_URL = "specUrl"
K_URL = "url"
K_REFERENCE_URLS = "referenceUrls"
K_TIMELINE = "timeline"
K_SOURCES = "sources"
K_DATA_SOURCES_LAST_CHECKED = "dataSourcesLastChecked"
