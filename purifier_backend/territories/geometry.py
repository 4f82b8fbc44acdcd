"""
Planar point-in-polygon helpers for territory polygons.

A ring is a list of ``[latitude, longitude]`` pairs. Containment treats
longitude as x and latitude as y and uses the even-odd ray casting rule.
Points lying on an edge or a vertex count as inside.
"""

from __future__ import annotations

import json
import math
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

from main.services.exceptions import InvalidPolygon, ValidationFailed

Point = Tuple[float, float]

EPSILON = 1e-12


class TerritoryShape(NamedTuple):
    id: str
    polygon: list


def validate_point(latitude, longitude) -> Point:
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise ValidationFailed("Latitude and longitude must be numbers.")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationFailed("Latitude and longitude must be finite.")
    if not -90 <= lat <= 90:
        raise ValidationFailed("Latitude must be between -90 and 90.")
    if not -180 <= lng <= 180:
        raise ValidationFailed("Longitude must be between -180 and 180.")
    return lat, lng


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _raw_vertices(raw) -> List[tuple]:
    """Pull ``(lat, lng)`` tuples out of any accepted input shape."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise InvalidPolygon("Polygon is not valid JSON.")

    if isinstance(raw, dict):
        if str(raw.get("type", "")).lower() != "polygon":
            raise InvalidPolygon("Only Polygon geometries are supported.")
        rings = raw.get("coordinates") or []
        if not rings or not isinstance(rings[0], (list, tuple)):
            raise InvalidPolygon("Polygon has no coordinates.")
        # GeoJSON order is [lng, lat]
        return [_pair(v, lng_first=True) for v in rings[0]]

    if not isinstance(raw, (list, tuple)) or not raw:
        raise InvalidPolygon("Polygon must be a non-empty list of coordinates.")

    if all(_is_number(v) for v in raw):
        if len(raw) % 2:
            raise InvalidPolygon("Flat coordinate list must have an even length.")
        return [(raw[i], raw[i + 1]) for i in range(0, len(raw), 2)]

    # Bare GeoJSON coordinates: [[[lng, lat], ...]]
    if (
        len(raw) == 1
        and isinstance(raw[0], (list, tuple))
        and raw[0]
        and isinstance(raw[0][0], (list, tuple))
    ):
        return [_pair(v, lng_first=True) for v in raw[0]]

    return [_pair(v) for v in raw]


def _pair(vertex, lng_first=False) -> tuple:
    if isinstance(vertex, dict):
        lat = vertex.get("lat", vertex.get("latitude"))
        lng = vertex.get("lng", vertex.get("longitude"))
        return lat, lng
    if isinstance(vertex, (list, tuple)) and len(vertex) >= 2:
        return (vertex[1], vertex[0]) if lng_first else (vertex[0], vertex[1])
    raise InvalidPolygon("Each vertex must be a [latitude, longitude] pair.")


def normalize_ring(raw) -> List[List[float]]:
    """
    Validate a polygon in any accepted input shape and return the canonical
    closed ring ``[[lat, lng], ..., [lat0, lng0]]``.
    """
    ring = []
    for lat, lng in _raw_vertices(raw):
        try:
            ring.append(list(validate_point(lat, lng)))
        except ValidationFailed as exc:
            raise InvalidPolygon(f"Invalid vertex: {exc.message}")

    distinct = {tuple(v) for v in ring}
    if len(distinct) < 3:
        raise InvalidPolygon("A polygon needs at least 3 distinct vertices.")

    if ring[0] != ring[-1]:
        ring.append(list(ring[0]))
    return ring


def close_ring(ring: Sequence[Sequence[float]]) -> List[List[float]]:
    """Tolerate rings stored without the closing vertex."""
    ring = [list(v[:2]) for v in ring]
    if ring and ring[0] != ring[-1]:
        ring.append(list(ring[0]))
    return ring


def _on_segment(x, y, x1, y1, x2, y2) -> bool:
    cross = (x - x1) * (y2 - y1) - (y - y1) * (x2 - x1)
    if abs(cross) > EPSILON:
        return False
    return (
        min(x1, x2) - EPSILON <= x <= max(x1, x2) + EPSILON
        and min(y1, y2) - EPSILON <= y <= max(y1, y2) + EPSILON
    )


def point_in_polygon(point: Point, ring) -> bool:
    lat, lng = point
    x, y = lng, lat
    vertices = close_ring(ring)
    inside = False
    for (y1, x1), (y2, x2) in zip(vertices, vertices[1:]):
        if _on_segment(x, y, x1, y1, x2, y2):
            return True
        if (y1 > y) != (y2 > y):
            x_cross = (x2 - x1) * (y - y1) / (y2 - y1) + x1
            if x < x_cross:
                inside = not inside
    return inside


def resolve_territory(point: Point, territories: Iterable) -> Optional[str]:
    """
    Return the id of the first territory (in iteration order) whose polygon
    contains ``point``, or None when nothing covers it.
    """
    lat, lng = validate_point(*point)
    for territory in territories:
        if point_in_polygon((lat, lng), territory.polygon):
            return territory.id
    return None
