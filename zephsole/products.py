"""
Per-project product specs: baseline, upper and sole
"""
import sqlite3
from typing import Any, Dict, List, Optional

from zephsole.database import json_dumps, new_id, row_to_dict


def _upsert(con: sqlite3.Connection, table: str, project_id: str, values: Dict[str, Any]):
    existing = con.execute(f"SELECT id FROM {table} WHERE project_id = ?", (project_id,)).fetchone()
    if existing:
        assignments = ", ".join(f"{column} = ?" for column in values)
        con.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", (*values.values(), existing["id"]))
        row_id = existing["id"]
    else:
        row_id = new_id()
        columns = ["id", "project_id", *values]
        placeholders = ", ".join("?" for _ in columns)
        con.execute(f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                    (row_id, project_id, *values.values()))
    con.commit()
    return row_id


def get_baseline(con: sqlite3.Connection, project_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM product_baselines WHERE project_id = ?", (project_id,)).fetchone()
    return row_to_dict(row, json_fields=("size_run", "measurements"))


def update_baseline(con: sqlite3.Connection, project_id: str, size_run: Dict[str, Any],
                    last_shape: Optional[str] = None, heel_height: Optional[float] = None,
                    toe_spring: Optional[float] = None) -> str:
    """size_run is {"system": str, "sizes": [float], "widths": [str]}"""
    return _upsert(con, "product_baselines", project_id, {
        "size_run_json": json_dumps(size_run),
        "last_shape": last_shape,
        "heel_height": heel_height,
        "toe_spring": toe_spring,
    })


def get_upper_design(con: sqlite3.Connection, project_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM upper_designs WHERE project_id = ?", (project_id,)).fetchone()
    return row_to_dict(row, json_fields=("panels", "closures"))


def update_upper_design(con: sqlite3.Connection, project_id: str, panels: List[Dict[str, Any]],
                        stitching: Optional[str] = None, closures: Optional[List[str]] = None,
                        lining: Optional[str] = None) -> str:
    return _upsert(con, "upper_designs", project_id, {
        "panels_json": json_dumps(panels),
        "stitching": stitching,
        "closures_json": json_dumps(closures) if closures is not None else None,
        "lining": lining,
    })


def get_sole_design(con: sqlite3.Connection, project_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM sole_designs WHERE project_id = ?", (project_id,)).fetchone()
    return row_to_dict(row)


def update_sole_design(con: sqlite3.Connection, project_id: str, outsole_material_id: Optional[str] = None,
                       midsole_material_id: Optional[str] = None, tread_pattern: Optional[str] = None,
                       midsole_stack: Optional[float] = None, shank: Optional[str] = None,
                       plate: Optional[str] = None) -> str:
    return _upsert(con, "sole_designs", project_id, {
        "outsole_material_id": outsole_material_id,
        "midsole_material_id": midsole_material_id,
        "tread_pattern": tread_pattern,
        "midsole_stack": midsole_stack,
        "shank": shank,
        "plate": plate,
    })
