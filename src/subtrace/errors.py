"""
Review and persistence exceptions.

Source and oracle errors live with their interfaces
(subtrace.sources.base, subtrace.oracle.base).
"""


class StoreError(Exception):
    """Base exception for detection store errors."""

    pass


class PersistenceFailure(StoreError):
    """A write could not be committed; the transaction was rolled back."""

    pass


class ReviewError(Exception):
    """Base exception for review actions."""

    pass


class DetectionNotFound(ReviewError):
    """No detection with this id for this user."""

    def __init__(self, detection_id: str):
        self.detection_id = detection_id
        super().__init__(f"Detection {detection_id} not found")


class ImportConflict(ReviewError):
    """Import or reject attempted on a detection that is already terminal."""

    def __init__(self, detection_id: str, status: str):
        self.detection_id = detection_id
        self.status = status
        super().__init__(f"Detection {detection_id} is already {status}")
