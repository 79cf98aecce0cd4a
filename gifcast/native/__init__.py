from .controller import NativeController
from .recorder import NativeRecorder

__all__ = ["NativeController", "NativeRecorder"]
