"""
Shared, cross-cutting code for the API.

`core/` holds the building blocks every feature uses: settings, the error
taxonomy, the database connection cache and SQL helpers, and the Cloudinary
blob store adapter. Feature-specific SQL and business logic live in the
corresponding feature package (e.g. `courses/`).
"""
