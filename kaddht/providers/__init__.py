"""Provider record storage, with an in-memory datastore and peer address book."""