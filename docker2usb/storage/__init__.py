"""Storage primitives: cleanup registry, tool runner, loop devices, mounts, filesystems."""
