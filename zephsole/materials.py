import sqlite3
from typing import Any, Dict, List, Optional

from zephsole.database import json_dumps, new_id, row_to_dict


def get_materials(con: sqlite3.Connection) -> List[Dict]:
    rows = con.execute("SELECT * FROM materials ORDER BY rowid").fetchall()
    return [row_to_dict(r, json_fields=("properties",), bool_fields=("availability",)) for r in rows]


def add_material(con: sqlite3.Connection, name: str, unit: str, price_per_unit: float, currency: str,
                 availability: bool, supplier: Optional[str] = None, co2_per_unit: Optional[float] = None,
                 properties: Optional[Dict[str, Any]] = None) -> str:
    material_id = new_id()
    con.execute("""
        INSERT INTO materials (id, name, supplier, unit, price_per_unit, currency, co2_per_unit,
                               properties_json, availability)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (material_id, name, supplier, unit, price_per_unit, currency, co2_per_unit,
          json_dumps(properties) if properties is not None else None, 1 if availability else 0))
    con.commit()
    return material_id
