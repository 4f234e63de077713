"""Step records and the views derived from them.

- `models`: the flat step record as delivered by the backend
- `nesting`: flat array -> nested control-flow forest (and back)
- `highlight`: which steps changed between two snapshots
- `view`: display helpers (titles, current step, example input/output)
"""

__all__: list[str] = []
