"""Helpers for dqlite, calico and node addresses, built on the snap."""