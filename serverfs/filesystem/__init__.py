"""Filesystem access confined to a server's root: path resolution, stat, disk usage and archives."""