import logging

_LOGGER = logging.getLogger(__name__)


class LazyObjectWrapper:
    def __init__(self, fn):
        self.__fn = fn
        self.__setup = False
        self.__obj = None

    def __ensure_setup(self):
        if not self.__setup:
            self.__obj = self.__fn()
            self.__setup = True

    def __getattr__(self, attr):
        self.__ensure_setup()
        return getattr(self.__obj, attr)


def _import_boto():
    obj = __import__("boto3")

    if not obj.session.Session().region_name:
        _LOGGER.debug("No AWS region configured, defaulting to us-east-1")
        obj.setup_default_session(region_name="us-east-1")

    return obj


botocore = LazyObjectWrapper(lambda: __import__("botocore.exceptions"))
boto3 = LazyObjectWrapper(_import_boto)

s3_client = LazyObjectWrapper(lambda: boto3.client("s3"))
