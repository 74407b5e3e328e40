from typing import List, Optional

from stable_automation.db.models import AssignmentMode


class AssignmentResolver:
    """
    Resolves the assignee for each generated instance of one definition.

    Rotation mode walks the rotation group cyclically starting at the
    persisted index. The advanced index is read back via ``rotation_index``
    at each batch boundary and committed together with that batch.
    Fair distribution is allocated elsewhere, so instances stay unassigned.
    """

    def __init__(
        self,
        mode: AssignmentMode,
        assigned_to: Optional[List[str]] = None,
        rotation_group: Optional[List[str]] = None,
        current_rotation_index: int = 0,
    ):
        self.mode = mode
        self.assigned_to = list(assigned_to or [])
        self.rotation_group = list(rotation_group or [])
        # The group may have shrunk since the index was persisted
        if self.rotation_group:
            self._index = (current_rotation_index or 0) % len(self.rotation_group)
        else:
            self._index = 0

    @classmethod
    def for_definition(cls, definition) -> "AssignmentResolver":
        return cls(
            mode=definition.assignment_mode,
            assigned_to=definition.assigned_to,
            rotation_group=definition.rotation_group,
            current_rotation_index=definition.current_rotation_index,
        )

    @property
    def rotation_index(self) -> int:
        return self._index

    def next_assignee(self) -> Optional[str]:
        if self.mode == AssignmentMode.FIXED:
            return self.assigned_to[0] if self.assigned_to else None

        if self.mode == AssignmentMode.ROTATION:
            if not self.rotation_group:
                return None
            assignee = self.rotation_group[self._index]
            self._index = (self._index + 1) % len(self.rotation_group)
            return assignee

        return None
