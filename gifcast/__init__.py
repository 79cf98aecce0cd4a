"""gifcast: record a window with a drawn cursor and get a looping GIF back."""

__version__ = "0.1.0"
