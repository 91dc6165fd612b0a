class BatchLoadResultError(Exception):
    pass

class LoaderFieldNotProvidedError(Exception):
    pass

class GlobalLoaderFieldOverlappedError(Exception):
    pass

class ResolverTargetAttrNotFound(Exception):
    pass
