from sqlalchemy.exc import InvalidRequestError


class InvalidPlanError(InvalidRequestError):
    """ A fetch plan references an unknown association, or names one twice """


class LazyLoadingAttributeError(InvalidRequestError):
    """ An association is being lazy-loaded outside of any fetch plan """

    attribute_name: str

    def __init__(self, model_name, attribute_name, reason='it is not covered by a fetch plan'):
        self.model_name = model_name
        self.attribute_name = attribute_name
        super().__init__(f"{self.model_name}.{self.attribute_name} is not available: {reason}")


class BatchFetchError(InvalidRequestError):
    """ A bulk fetch has failed. Every owner of that batch is now FAILED """

    def __init__(self, descriptor, owners, original: BaseException):
        self.descriptor = descriptor
        self.owners = tuple(owners)
        self.original = original
        super().__init__(
            f"{descriptor}: bulk fetch for {len(self.owners)} instances failed: "
            f"{type(original).__name__}: {original}"
        )


class ResolverClosedError(InvalidRequestError):
    """ The unit of work has ended; its resolver can't be used anymore """
