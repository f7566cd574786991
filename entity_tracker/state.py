import enum


class EntityState(enum.Enum):
    DETACHED = "Detached"
    UNCHANGED = "Unchanged"
    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"

    def __str__(self) -> str:
        return self.value
