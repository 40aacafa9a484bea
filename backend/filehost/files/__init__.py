"""File hosting module.

Handles raw-body uploads to the mount path and downloads from below it.
Files are stored flat in the storage root: {storage_path}/{filename}.

Services:
    - FileStore: sanitized, atomic on-disk storage.
    - UploadHandler / RetrievalHandler: HTTP handlers for the mount path.
    - FileHost: the handler set built from one configuration snapshot.
"""
