"""Tests for the container aggregate."""

import json

from fhir_marshal.services.aggregate import ContainerAggregate, expand_inputs


class TestExpandInputs:
    """Tests for expand_inputs function."""

    def test_directory_contents_sorted(self, tmp_path):
        """Directories expand to their files in name order."""
        (tmp_path / "b.ndjson").write_text("{}")
        (tmp_path / "a.ndjson").write_text("{}")
        (tmp_path / "sub").mkdir()
        assert [p.name for p in expand_inputs([tmp_path])] == ["a.ndjson", "b.ndjson"]

    def test_files_kept_as_given(self, tmp_path):
        """Plain file paths pass through, missing ones included."""
        missing = tmp_path / "missing.ndjson"
        assert expand_inputs([str(missing)]) == [missing]


class TestContainerAggregate:
    """Tests for ContainerAggregate."""

    def test_opens_valid_and_skips_invalid(self, tmp_path, ndjson_file, single_resource_file):
        """Unusable inputs are skipped, not fatal."""
        bundle = tmp_path / "bundle.json"
        bundle.write_text(json.dumps({"resourceType": "Bundle"}))
        missing = tmp_path / "missing.ndjson"

        with ContainerAggregate.open([ndjson_file, single_resource_file, bundle, missing]) as agg:
            assert len(agg) == 2
            assert agg.total_count == 3
            assert {path for path, _ in agg.skipped} == {str(bundle), str(missing)}

    def test_close_closes_containers(self, ndjson_file):
        """Closing the aggregate closes every container."""
        agg = ContainerAggregate.open([ndjson_file])
        agg.close()
        assert all(c.closed for c in agg)

    def test_empty_when_nothing_opens(self, tmp_path):
        """No usable inputs yields an empty aggregate."""
        agg = ContainerAggregate.open([tmp_path / "nope"])
        assert len(agg) == 0
        assert agg.total_count == 0
