"""Grid spatial index over derived points."""

from collections import defaultdict
from collections.abc import Hashable, Iterator
from math import floor

from vdrs.storage.geo import BoundingBox, GeoPoint

Cell = tuple[int, int]


class GridIndex:
    """Uniform lon/lat grid mapping cells to row keys.

    Rows without a derived point are never indexed. Updates happen in the
    same call that writes the row so the index cannot go stale.
    """

    def __init__(self, cell_size_degrees: float = 0.01):
        if cell_size_degrees <= 0:
            raise ValueError("cell_size_degrees must be positive")
        self.cell_size = cell_size_degrees
        self._cells: dict[Cell, set[Hashable]] = defaultdict(set)
        self._positions: dict[Hashable, Cell] = {}

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._positions

    def cell_for(self, point: GeoPoint) -> Cell:
        return (floor(point.latitude / self.cell_size), floor(point.longitude / self.cell_size))

    def upsert(self, key: Hashable, point: GeoPoint | None) -> None:
        """Place key at point, moving it if it was indexed elsewhere."""
        if point is None:
            self.remove(key)
            return

        cell = self.cell_for(point)
        previous = self._positions.get(key)
        if previous == cell:
            return
        if previous is not None:
            self._discard(previous, key)

        self._cells[cell].add(key)
        self._positions[key] = cell

    def remove(self, key: Hashable) -> None:
        previous = self._positions.pop(key, None)
        if previous is not None:
            self._discard(previous, key)

    def _discard(self, cell: Cell, key: Hashable) -> None:
        members = self._cells.get(cell)
        if members is None:
            return
        members.discard(key)
        if not members:
            del self._cells[cell]

    def candidates(self, bbox: BoundingBox) -> Iterator[Hashable]:
        """Yield keys in cells intersecting the box (a superset of the exact answer)."""
        lat_lo = floor(bbox.min_lat / self.cell_size)
        lat_hi = floor(bbox.max_lat / self.cell_size)

        for lon_min, lon_max in bbox.longitude_ranges():
            lon_lo = floor(lon_min / self.cell_size)
            lon_hi = floor(lon_max / self.cell_size)
            span = (lat_hi - lat_lo + 1) * (lon_hi - lon_lo + 1)

            if span > len(self._cells):
                # Box covers more cells than are populated; walk populated cells
                for (lat_cell, lon_cell), members in list(self._cells.items()):
                    if lat_lo <= lat_cell <= lat_hi and lon_lo <= lon_cell <= lon_hi:
                        yield from list(members)
                continue

            for lat_cell in range(lat_lo, lat_hi + 1):
                for lon_cell in range(lon_lo, lon_hi + 1):
                    members = self._cells.get((lat_cell, lon_cell))
                    if members:
                        yield from list(members)
