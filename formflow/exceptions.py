from typing import List


class FormflowError(Exception):
    """Base class for errors the API layer maps to HTTP responses."""


class FormNotFound(FormflowError):
    """Form missing, not owned by the caller, or not accepting submissions."""


class SubmissionValidationError(FormflowError):
    def __init__(self, errors: List[dict]):
        super().__init__(f'{len(errors)} field(s) failed validation')
        self.errors = errors


class InvalidStatusTransition(FormflowError):
    def __init__(self, current: str, requested: str):
        super().__init__(f'cannot move form from {current} to {requested}')
        self.current = current
        self.requested = requested


class FieldOrderConflict(FormflowError):
    pass


class InvalidFieldProperties(FormflowError):
    pass


class TagAlreadyAssigned(FormflowError):
    pass
