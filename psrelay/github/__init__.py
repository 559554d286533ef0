"""GitHub event decoding and chat rendering."""
