import json

import pytest

from tierstack.config.environments import StackProps
from tierstack.errors import ConfigurationError
from tierstack.ledger import Ledger


class TestLedger:
    """Test the persisted deployment ledger"""

    def test_round_trip_through_file(self, tmp_path):
        """Test entries survive a reload"""
        path = tmp_path / "state" / "ledger.json"
        ledger = Ledger(path)
        ledger.record("quarkfin-network-dev", "abc123", {"VpcId": "vpc-1"}, "available")

        reloaded = Ledger(path)
        entry = reloaded.get("quarkfin-network-dev")

        assert entry.fingerprint == "abc123"
        assert entry.outputs == {"VpcId": "vpc-1"}
        assert entry.status == "available"
        assert entry.updated_at.endswith("Z")

    def test_file_layout(self, tmp_path):
        """Test the file is versioned JSON keyed by stack name"""
        ledger = Ledger.for_project(tmp_path, StackProps("quarkfin", "staging"))
        ledger.record("quarkfin-identity-staging", "f00", {}, "available")

        data = json.loads((tmp_path / "quarkfin-staging.aws.json").read_text())

        assert data["version"] == 1
        assert list(data["stacks"]) == ["quarkfin-identity-staging"]

    def test_remove(self, tmp_path):
        """Test removed entries are gone after a reload"""
        path = tmp_path / "ledger.json"
        ledger = Ledger(path)
        ledger.record("quarkfin-cdn-dev", "1", {}, "available")
        ledger.remove("quarkfin-cdn-dev")
        ledger.remove("quarkfin-cdn-dev")

        assert Ledger(path).entries() == {}

    def test_no_temp_files_left(self, tmp_path):
        """Test atomic writes clean up after themselves"""
        ledger = Ledger(tmp_path / "ledger.json")
        for n in range(3):
            ledger.record(f"stack-{n}", str(n), {}, "available")

        assert [p.name for p in tmp_path.iterdir()] == ["ledger.json"]

    def test_in_memory_ledger(self):
        """Test a ledger without a path never touches disk"""
        ledger = Ledger()
        ledger.record("quarkfin-app-dev", "x", {"InstanceIds": "i-1"}, "available")

        assert ledger.path is None
        assert ledger.get("quarkfin-app-dev").outputs == {"InstanceIds": "i-1"}

    def test_corrupt_file(self, tmp_path):
        """Test an unreadable ledger is reported, not silently reset"""
        path = tmp_path / "ledger.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError):
            Ledger(path)
