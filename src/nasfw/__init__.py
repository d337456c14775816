"""nasfw: unpack NAS vendor firmware images into an inspectable sysroot."""

__version__ = "0.1.0"
