from geoalchemy2.elements import WKTElement
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def center_point(lat: float, lon: float) -> WKTElement:
    return WKTElement(f"POINT({lon} {lat})", srid=4326)


async def geofence_ids_at(db: AsyncSession, company_id: int, lat: float, lon: float):
    """Ids of the company's active fences whose circle covers the point."""
    rows = await db.execute(
        text("""
            SELECT id
            FROM geofences
            WHERE company_id = :company_id
              AND is_active
              AND ST_DWithin(
                    geom,
                    ST_SetSRID(ST_MakePoint(:lon, :lat), 4326)::geography,
                    radius_meters,
                    false
                  )
            ORDER BY id
        """).bindparams(company_id=company_id, lon=lon, lat=lat)
    )
    return [r.id for r in rows.fetchall()]
