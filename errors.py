"""Error type raised by API handlers and services."""


class ApiError(Exception):
    """An error with an HTTP status and a machine-readable code.

    Extra keyword arguments are merged into the JSON body.
    """

    def __init__(self, status, code, message=None, **extra):
        super().__init__(message or code)
        self.status = status
        self.code = code
        self.message = message
        self.extra = extra

    def to_dict(self):
        body = {'error': self.code}
        if self.message:
            body['message'] = self.message
        body.update(self.extra)
        return body
