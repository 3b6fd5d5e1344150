"""FastAPI service exposing the credential broker over HTTP."""
