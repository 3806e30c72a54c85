# /talkflow/utils/errors.py

# Domain exceptions shared by the engine, the handlers and the HTTP layer.


class TalkFlowError(Exception):
    """Base class for conversation engine errors."""
    status_code = 400


class TalkNotFoundError(TalkFlowError):
    status_code = 404


class FlowNotAttachedError(TalkFlowError):
    """The Talk has no flow, so it is not eligible for automation."""
    status_code = 409


class StepNotFoundError(TalkFlowError):
    status_code = 404


class FlowDefinitionError(TalkFlowError):
    """An authored flow definition could not be turned into a graph."""
    status_code = 422


class TalkStateError(TalkFlowError):
    """The requested lifecycle change does not apply to the Talk's current status."""
    status_code = 409


class AIServiceError(TalkFlowError):
    status_code = 502
