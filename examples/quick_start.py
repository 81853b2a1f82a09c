#!/usr/bin/env python3
# Example usage of embedded_crypt_db_engine

import logging

from embedded_crypt_db_engine import Database, ValidationError

# Users: name is mandatory, age defaults to 0 and must be a non-negative number
USER_SCHEMA = {
    "name": {"type": "string", "required": True},
    "age": {"type": "number", "default": 0, "min": 0},
    "email": {"type": "string", "pattern": r"^[^@]+@[^@]+$"},
    "profile": {
        "type": "object",
        "fields": {
            "active": {"type": "boolean", "default": True},
        },
    },
}

def is_adult(value, path):
    return value >= 18

def main() -> None:
    logging.basicConfig(level=logging.INFO)

    # One encrypted file; the secret never touches disk
    db = Database("demo.edb", "correct horse battery staple", validators={"adult": is_adult})
    db.set_schema("user:", USER_SCHEMA)
    db.set_schema("voter:", {"age": {"type": "number", "validator": "adult"}})

    db.set("user:alice", {"name": "Alice", "age": 33, "profile": {}})
    db.set("user:bob", {"name": "Bob", "age": 17, "email": "bob@example.com"})
    print("Loaded:", db.get("user:alice"))

    try:
        db.set("user:nobody", {"age": 5})
    except ValidationError as e:
        print("Rejected:", e, "at", e.path)

    # Mongo-style filter with sort and projection
    for r in db.query({"age": {"$gte": 18}, "profile.active": True}, sort={"age": -1}, projection={"name": 1}):
        print("Adult active:", r["name"])

    # Same thing, chained
    print("Count:", db.query_builder().where("age", ">=", 18).count())
    print("Natural:", db.natural_query('name starts with "b"'))
    print("Search:", db.search("example.com"))

    # Links: deleting the team removes its members too
    db.set("team:core", {"title": "Core"})
    db.link("team:core", "user:bob")
    print("Removed:", db.delete_with_links("team:core"))

    path = db.backup(include_metadata=True)
    print("Backup:", db.get_backup_info(path))
    print("Stats:", db.get_stats())

if __name__ == "__main__":
    main()
