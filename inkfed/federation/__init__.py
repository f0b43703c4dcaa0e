"""ActivityPub federation engine: signatures, actors, translation, inbox and outbox."""
