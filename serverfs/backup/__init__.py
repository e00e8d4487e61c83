"""Local server backups stored as gzip-compressed tar archives."""