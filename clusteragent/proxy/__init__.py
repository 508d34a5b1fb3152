"""Configuration and endpoint parsing for the API server proxy."""