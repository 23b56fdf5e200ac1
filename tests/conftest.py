from __future__ import annotations

import pytest

from synth import build_binary


@pytest.fixture
def make_harness():
    """Build a harness over a synthetic fat binary; hooks default to the full table."""
    pytest.importorskip("unicorn")
    from nac_emulator.nac import load_nac

    def factory(code: bytes = b"\xc3", imports=(), hooks=None, fixtures=None, **kwargs):
        return load_nac(build_binary(code, imports, **kwargs), fixtures, hooks=hooks)

    return factory


@pytest.fixture
def harness(make_harness):
    return make_harness()
