"""Helpers for files, tokens, certificates, commands and remote hosts."""