from typing import Any, Optional, Type

from case_dataloader.loader import BatchLoader


class Depends:
    def __init__(
        self,
        dependency: Optional[Type[BatchLoader]] = None,
    ):
        self.dependency = dependency


def LoaderDepend(  # noqa: N802
    dependency: Optional[Type[BatchLoader]] = None,
) -> Any:
    return Depends(dependency=dependency)


Loader = LoaderDepend
