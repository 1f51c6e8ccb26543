from idvault.service.credentials import CredentialHasher


def test_hash_and_verify(hasher):
    stored, algo = hasher.hash("Correct-Horse-9")

    assert algo == "argon2id"
    assert stored.startswith("$argon2id$")
    assert hasher.verify(stored, "Correct-Horse-9", algo=algo)
    assert not hasher.verify(stored, "correct-horse-9", algo=algo)


def test_salts_differ(hasher):
    assert hasher.hash("same")[0] != hasher.hash("same")[0]


def test_unknown_algorithm_or_garbage_hash_fails_closed(hasher):
    stored, _ = hasher.hash("pw")

    assert not hasher.verify(stored, "pw", algo="bcrypt")
    assert not hasher.verify(None, "pw")
    assert not hasher.verify("not-a-hash", "pw")


def test_needs_rehash_when_parameters_change(hasher):
    stored, _ = hasher.hash("pw")
    stronger = CredentialHasher(time_cost=2, memory_cost=8, parallelism=1)

    assert not hasher.needs_rehash(stored)
    assert stronger.needs_rehash(stored)


def test_burn_never_raises(hasher):
    hasher.burn("anything")
    hasher.burn("")
