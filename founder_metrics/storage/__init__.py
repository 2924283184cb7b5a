"""
Storage layer: datastore handle, typed records and repositories.
"""
