"""
GIS upload persistence — one ``gis_data`` row per project.

The row holds a geometry container (GeoJSON / ArcGIS JSON / the original
uploaded KML/KMZ file, base64) plus metadata derived by walking the GeoJSON
coordinate arrays: geometry type (``Mixed`` for heterogeneous collections),
coordinate count, extent, centroid, a description sentence and an inventory
entry.

Upsert is PATCH-then-POST keyed by ``parent_project_id``; when no geometry
is present at all the row is deleted instead.

Upload dicts use the portal wire keys:
    {"geoJson", "arcgisJson", "source", "uploadedFile": {"format", "fileName",
     "fileSize", "fileType", "base64Data", "lastModified"}}
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

from permit_portal.integrations.postgrest import StoreQuery
from permit_portal.integrations.store_gateway import StoreGateway, get_store
from permit_portal.services.payload_builder import DATA_SOURCE_SYSTEM
from permit_portal.utils.helpers import normalize_number, safe_json_parse, utc_now_iso

logger = logging.getLogger(__name__)

_SOURCE_DESCRIPTIONS = {
    "draw": "interactive sketching tools",
    "search": "map search results",
    "upload": "an uploaded file",
}

_ORIGINAL_FILE_FORMATS = {"kml": "KML", "kmz": "KMZ", "geojson": "GeoJSON (uploaded file)"}


# ═════════════════════════════════════════════════════════════════════════════
# Geometry summary
# ═════════════════════════════════════════════════════════════════════════════

def _is_coordinate(value: list) -> bool:
    if len(value) < 2:
        return False
    lon, lat = value[0], value[1]
    return all(
        isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
        for v in (lon, lat)
    )


def collect_coordinates(value: Any, result: list[tuple[float, float]], seen: set[int] | None = None) -> None:
    """Append every ``[lon, lat]`` pair found below *value* to *result*."""
    seen = seen if seen is not None else set()
    if isinstance(value, list):
        if _is_coordinate(value):
            result.append((value[0], value[1]))
            return
        for entry in value:
            collect_coordinates(entry, result, seen)
        return
    if not isinstance(value, dict) or id(value) in seen:
        return
    seen.add(id(value))

    kind = value.get("type")
    if kind == "Feature" and value.get("geometry"):
        collect_coordinates(value["geometry"], result, seen)
    if kind == "FeatureCollection" and isinstance(value.get("features"), list):
        for feature in value["features"]:
            collect_coordinates(feature, result, seen)
    if kind == "GeometryCollection" and isinstance(value.get("geometries"), list):
        for geometry in value["geometries"]:
            collect_coordinates(geometry, result, seen)
    if isinstance(value.get("coordinates"), list):
        collect_coordinates(value["coordinates"], result, seen)


def extract_geometry_type(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    kind = value.get("type")
    if not isinstance(kind, str) or not kind:
        return None
    if kind == "Feature":
        return extract_geometry_type(value.get("geometry"))

    children_key = {"FeatureCollection": "features", "GeometryCollection": "geometries"}.get(kind)
    if children_key and isinstance(value.get(children_key), list):
        types = []
        for child in value[children_key]:
            child_type = extract_geometry_type(child)
            if child_type and child_type not in types:
                types.append(child_type)
        if len(types) == 1:
            return types[0]
        return "Mixed" if types else None
    return kind


def summarize_geometry(value: Any) -> dict | None:
    """``{geometryType, coordinateCount, extent?, centroid?}`` for a GeoJSON object."""
    if not isinstance(value, dict):
        return None
    coordinates: list[tuple[float, float]] = []
    collect_coordinates(value, coordinates)
    summary: dict[str, Any] = {
        "geometryType": extract_geometry_type(value),
        "coordinateCount": len(coordinates),
    }
    if not coordinates:
        return summary

    lons = [lon for lon, _ in coordinates]
    lats = [lat for _, lat in coordinates]
    summary["extent"] = {
        "latitude": {"min": min(lats), "max": max(lats)},
        "longitude": {"min": min(lons), "max": max(lons)},
    }
    summary["centroid"] = {
        "latitude": sum(lats) / len(lats),
        "longitude": sum(lons) / len(lons),
    }
    return summary


def parse_boundary_geojson(raw: Any) -> dict | None:
    if isinstance(raw, str):
        parsed = safe_json_parse(raw)
        return parsed if isinstance(parsed, dict) else None
    return raw if isinstance(raw, dict) else None


# ═════════════════════════════════════════════════════════════════════════════
# Container + metadata
# ═════════════════════════════════════════════════════════════════════════════

def determine_available_formats(upload: dict) -> list[str]:
    formats: list[str] = []
    if upload.get("geoJson"):
        formats.append("GeoJSON")
    if upload.get("arcgisJson"):
        formats.append("ArcGIS JSON")
    original = (upload.get("uploadedFile") or {}).get("format")
    if original in _ORIGINAL_FILE_FORMATS:
        formats.append(_ORIGINAL_FILE_FORMATS[original])
    return list(dict.fromkeys(formats))


def build_boundary_description(
    project_title: str | None,
    geometry_type: str | None,
    source: str | None,
    available_formats: list[str],
) -> str:
    if project_title and project_title.strip():
        segments = [f'Project boundary for "{project_title.strip()}".']
    else:
        segments = ["Project boundary geometry."]
    if geometry_type:
        segments.append(f"Geometry type: {geometry_type}.")
    if source in _SOURCE_DESCRIPTIONS:
        segments.append(f"Captured via {_SOURCE_DESCRIPTIONS[source]}.")
    if available_formats:
        segments.append(f"Available formats: {', '.join(available_formats)}.")
    return " ".join(segments)


def _file_metadata(file: dict, timestamp: str, *, include_data: bool) -> dict:
    keys = ("format", "fileName", "fileSize", "fileType")
    if include_data:
        keys += ("base64Data",)
    entry = {key: file[key] for key in keys + ("lastModified",) if file.get(key) is not None}
    entry["storedAt"] = timestamp
    return entry


def build_gis_container(upload: dict, timestamp: str) -> dict:
    container: dict[str, Any] = {"storedAt": timestamp}
    for key in ("geoJson", "arcgisJson"):
        if upload.get(key):
            parsed = safe_json_parse(upload[key])
            container[key] = parsed if parsed is not None else upload[key]
    if upload.get("source"):
        container["source"] = upload["source"]
    if upload.get("uploadedFile"):
        container["originalFile"] = _file_metadata(upload["uploadedFile"], timestamp, include_data=True)
    return container


def build_boundary_inventory_entry(
    upload: dict,
    summary: dict | None,
    description: str | None,
    timestamp: str,
    available_formats: list[str],
) -> dict | None:
    if not summary and not available_formats and not upload.get("uploadedFile"):
        return None
    entry: dict[str, Any] = {"name": "Project Boundary", "storedAt": timestamp}
    if description:
        entry["description"] = description
    summary = summary or {}
    if summary.get("geometryType"):
        entry["geometryType"] = summary["geometryType"]
    if summary.get("coordinateCount"):
        entry["coordinateCount"] = summary["coordinateCount"]
    if available_formats:
        entry["availableFormats"] = available_formats
    if upload.get("source"):
        entry["source"] = upload["source"]
    if summary.get("extent"):
        entry["extent"] = summary["extent"]
    if summary.get("centroid"):
        entry["centroid"] = summary["centroid"]
    if upload.get("uploadedFile"):
        entry["originalFile"] = _file_metadata(upload["uploadedFile"], timestamp, include_data=False)
    return entry


def build_boundary_metadata(
    upload: dict,
    timestamp: str,
    project_title: str | None = None,
    centroid_lat: Any = None,
    centroid_lon: Any = None,
) -> dict:
    """Description, inventory, centroid and extent for a GIS upload.

    Form-supplied centroid coordinates win over the computed centroid.
    """
    geojson = parse_boundary_geojson(upload.get("geoJson"))
    summary = summarize_geometry(geojson) if geojson else None
    available_formats = determine_available_formats(upload)

    description = None
    if summary or available_formats:
        description = build_boundary_description(
            project_title, (summary or {}).get("geometryType"), upload.get("source"), available_formats,
        )

    centroid = (summary or {}).get("centroid") or {}
    lat = normalize_number(centroid_lat)
    lon = normalize_number(centroid_lon)
    extent = (summary or {}).get("extent")
    inventory = build_boundary_inventory_entry(upload, summary, description, timestamp, available_formats)

    return {
        "description": description,
        "containerInventory": {"projectBoundary": inventory} if inventory else None,
        "centroidLat": lat if lat is not None else normalize_number(centroid.get("latitude")),
        "centroidLon": lon if lon is not None else normalize_number(centroid.get("longitude")),
        "extentText": json.dumps(extent) if extent else None,
    }


def normalize_upload(upload: dict) -> dict | None:
    """Trim text geometries and drop empty parts; None when nothing remains."""
    file = upload.get("uploadedFile")
    has_file = isinstance(file, dict) and isinstance(file.get("base64Data"), str) and bool(file["base64Data"].strip())
    normalized = {key: value for key, value in upload.items() if key not in ("geoJson", "arcgisJson")}
    for key in ("geoJson", "arcgisJson"):
        value = upload.get(key)
        if isinstance(value, str) and value.strip():
            normalized[key] = value.strip()
    if not has_file:
        normalized["uploadedFile"] = None
    if not has_file and "geoJson" not in normalized and "arcgisJson" not in normalized:
        return None
    return normalized


# ═════════════════════════════════════════════════════════════════════════════
# Store operations
# ═════════════════════════════════════════════════════════════════════════════

def delete_project_gis_data(project_id: int, *, store: StoreGateway | None = None) -> None:
    store = store or get_store("portal")
    store.delete(
        "gis_data",
        StoreQuery().eq("parent_project_id", project_id),
        description="GIS data",
    )


def upsert_project_gis_data(
    project_id: int,
    upload: dict,
    *,
    project_title: str | None = None,
    centroid_lat: Any = None,
    centroid_lon: Any = None,
    store: StoreGateway | None = None,
) -> str:
    """Store the project's GIS upload, or remove the row when it is empty.

    Returns:
        ``"deleted"``, ``"updated"`` or ``"inserted"``.
    """
    store = store or get_store("portal")
    normalized = normalize_upload(upload or {})
    if normalized is None:
        delete_project_gis_data(project_id, store=store)
        return "deleted"

    timestamp = utc_now_iso()
    metadata = build_boundary_metadata(normalized, timestamp, project_title, centroid_lat, centroid_lon)
    payload = {
        "parent_project_id": project_id,
        "description": metadata["description"],
        "container_inventory": metadata["containerInventory"],
        "data_container": build_gis_container(normalized, timestamp),
        "centroid_lat": metadata["centroidLat"],
        "centroid_lon": metadata["centroidLon"],
        "extent": metadata["extentText"],
        "data_source_system": DATA_SOURCE_SYSTEM,
        "updated_last": timestamp,
        "last_updated": timestamp,
        "retrieved_timestamp": timestamp,
    }

    updated = store.patch(
        "gis_data",
        StoreQuery().eq("parent_project_id", project_id),
        payload,
        error_context="Failed to update existing GIS data",
        returning=True,
    )
    if updated:
        return "updated"

    store.insert("gis_data", payload, error_context="Failed to store uploaded GIS data")
    return "inserted"


def _restore_original_file(candidate: Any) -> dict | None:
    if not isinstance(candidate, dict):
        return None
    if candidate.get("format") not in ("kml", "kmz"):
        return None
    if not isinstance(candidate.get("base64Data"), str) or not isinstance(candidate.get("fileName"), str):
        return None
    size = candidate.get("fileSize")
    if isinstance(size, bool) or not isinstance(size, (int, float)):
        return None
    restored = {
        "format": candidate["format"],
        "base64Data": candidate["base64Data"],
        "fileName": candidate["fileName"],
        "fileSize": size,
    }
    if isinstance(candidate.get("fileType"), str):
        restored["fileType"] = candidate["fileType"]
    if normalize_number(candidate.get("lastModified")) is not None:
        restored["lastModified"] = candidate["lastModified"]
    return restored


def fetch_project_gis_upload(project_id: int, *, store: StoreGateway | None = None) -> dict | None:
    """Latest GIS upload of a project as ``{"upload", "updatedAt"}``, or None."""
    store = store or get_store("portal")
    rows = store.fetch_list(
        "gis_data",
        StoreQuery()
        .select("id", "data_container", "updated_last", "last_updated", "retrieved_timestamp")
        .eq("parent_project_id", project_id)
        .order("updated_last", descending=True, nulls_last=True)
        .limit(1),
        "GIS data",
        error_context="Failed to fetch GIS data",
    )
    if not rows:
        return None
    record = rows[0]

    upload: dict[str, Any] = {}
    container = record.get("data_container")
    if isinstance(container, dict):
        for key in ("geoJson", "arcgisJson"):
            candidate = container.get(key)
            if isinstance(candidate, str):
                upload[key] = candidate
            elif isinstance(candidate, (dict, list)) and candidate:
                upload[key] = json.dumps(candidate)
        if isinstance(container.get("source"), str):
            upload["source"] = container["source"]
        original = _restore_original_file(container.get("originalFile"))
        if original:
            upload["uploadedFile"] = original

    updated_at = next(
        (
            record[key] for key in ("updated_last", "last_updated", "retrieved_timestamp")
            if isinstance(record.get(key), str) and record[key]
        ),
        None,
    )
    return {"upload": upload, "updatedAt": updated_at}
