"""prootbox - run a program inside an embedded rootfs under proot."""

__version__ = "0.1.0"
