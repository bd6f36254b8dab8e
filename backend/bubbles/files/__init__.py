"""Image upload and storage for message attachments.

Images are stored locally and tracked in DuckDB. Messages reference them by
public URL; deleting a message or removing an image in an edit deletes the
file.

Supported image types: jpeg, png, gif, webp, up to 4MB.
"""
