"""
Error taxonomy for the exam engine.

Every error raised by the services derives from ``LabExamError`` (itself a
``ValueError``) so callers can catch engine failures as a family while the
HTTP layer maps the concrete class to a status code.
"""


class LabExamError(ValueError):
    """Base exception for exam-engine errors."""

    pass


class RecordNotFound(LabExamError):
    """An exam, field, link, request or instance id does not exist."""

    pass


class InvalidCompositionLink(LabExamError):
    """A composition link would reference itself or close a cycle."""

    pass


class InvalidKindForOperation(LabExamError):
    """The exam kind or state does not allow the requested operation."""

    pass


class UnknownField(LabExamError):
    """A value references a field outside the instance's exam lineage."""

    pass


class InvalidValue(LabExamError):
    """A numeric field received a non-numeric value."""

    pass


class InvalidFieldDefinition(LabExamError):
    """Field attributes failed schema validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class FieldVersionConflict(LabExamError):
    """A version operation targeted a superseded version of a field slot."""

    pass


class InvalidStatusTransition(LabExamError):
    pass


class InstanceNotWritable(LabExamError):
    """Values cannot be recorded on a cancelled instance."""

    pass


class IncompleteResults(LabExamError):
    """An instance was asked to complete while required values are missing."""

    pass


class DuplicateExamCode(LabExamError):
    pass
