"""
Classroom location checks: GPS geofence and Wi-Fi allowlist.
"""
import math

EARTH_RADIUS_METERS = 6371000

GEOFENCE = 'GEOFENCE_VIOLATION'
WIFI = 'WIFI_VIOLATION'


def haversine_meters(lat1, lon1, lat2, lon2):
    """Great-circle distance between two coordinates, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _gps(metadata):
    gps = (metadata or {}).get('gps') or {}
    try:
        return float(gps['latitude']), float(gps['longitude'])
    except (KeyError, TypeError, ValueError):
        return None


def check_geofence(geofence, metadata):
    """Return a violation message, or None when inside (or unconstrained)."""
    if not geofence:
        return None
    position = _gps(metadata)
    if position is None:
        return 'Location unavailable'

    radius = float(geofence.get('radiusMeters', 0))
    distance = haversine_meters(
        float(geofence['latitude']), float(geofence['longitude']), *position
    )
    if distance > radius:
        return f"{round(distance)}m from classroom (limit: {round(radius)}m)"
    return None


def check_wifi(allowlist, metadata):
    """BSSID must contain one of the allowlisted names (case-insensitive)."""
    if not allowlist:
        return None
    bssid = str((metadata or {}).get('bssid') or '').lower()
    if not bssid:
        return 'Wi-Fi network unavailable'
    if any(allowed.lower() in bssid for allowed in allowlist):
        return None
    return 'Not connected to an allowed classroom network'


def check_location(constraints, metadata, default_allowlist=None):
    """
    Run every configured check and return a list of ``(code, message)``
    violations. An empty list means the scan is within bounds.
    """
    constraints = constraints or {}
    violations = []

    message = check_geofence(constraints.get('geofence'), metadata)
    if message:
        violations.append((GEOFENCE, message))

    allowlist = constraints.get('wifiAllowlist') or default_allowlist or []
    message = check_wifi(allowlist, metadata)
    if message:
        violations.append((WIFI, message))

    return violations
