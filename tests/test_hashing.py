from fusedb.hashing import bloom_hashes, splitmix64, xxhash64


def test_xxhash64_known_vectors():
    assert xxhash64(b"") == 0xEF46DB3751D8E999
    assert xxhash64(b"abc") == 0x44BC2CF5AD770999


def test_splitmix64_first_output_from_zero():
    assert splitmix64(0) == 0xE220A8397B1DCDAF


def test_xxhash64_all_lengths_distinct_and_in_range():
    digests = [xxhash64(b"a" * n) for n in range(70)]
    assert len(set(digests)) == 70
    assert all(0 <= d < 2**64 for d in digests)


def test_xxhash64_deterministic_and_accepts_buffers():
    data = b"tenant:42:account:100500" * 3
    assert xxhash64(data) == xxhash64(bytearray(data))
    assert xxhash64(data) == xxhash64(memoryview(data))


def test_xxhash64_seed_changes_digest():
    assert len({xxhash64(b"abc", seed) for seed in range(4)}) == 4


def test_bloom_hashes_first_is_xxhash():
    for key in (b"", b"alpha", b"k" * 40):
        h1, h2 = bloom_hashes(key)
        assert h1 == xxhash64(key)
        assert 0 < h2 < 2**64


def test_bloom_hashes_deterministic():
    assert bloom_hashes(b"delta") == bloom_hashes(b"delta")
    assert len({bloom_hashes(k) for k in (b"a", b"b", b"c")}) == 3