import json

import pytest

from prohtds.discovery import ServiceDef, ServiceKey, TargetGroup, list_target_groups
from prohtds.errors import ListingError, MalformedKeyError, MalformedValueError

from conftest import http_get


WEBAPP = '{"service_port":8080,"metrics_port":9090,"metrics_url":"/metrics"}'


class TestServiceKey:
    def test_parse_names_segments(self):
        key = ServiceKey.parse("/discovery/webapp/instance-7")
        assert key.root == ""
        assert key.category == "discovery"
        assert key.job == "webapp"
        assert key.instance == "instance-7"

    def test_extra_segments_ignored(self):
        key = ServiceKey.parse("/discovery/webapp/instance-7/extra")
        assert key.instance == "instance-7"

    @pytest.mark.parametrize("key", ["/discovery/webapp", "webapp", "/"])
    def test_too_few_segments(self, key):
        with pytest.raises(MalformedKeyError) as exc:
            ServiceKey.parse(key)
        assert exc.value.key == key
        assert repr(key) in str(exc.value)

    def test_empty_instance(self):
        with pytest.raises(MalformedKeyError, match="instance segment is empty"):
            ServiceKey.parse("/discovery/webapp/")

    def test_empty_job(self):
        with pytest.raises(MalformedKeyError, match="job segment is empty"):
            ServiceKey.parse("/discovery//instance-7")


class TestServiceDef:
    def test_from_json(self):
        sdef = ServiceDef.from_json("/k/a/b", WEBAPP.encode())
        assert sdef == ServiceDef(service_port=8080, metrics_port=9090, metrics_url="/metrics")

    @pytest.mark.parametrize("raw, reason", [
        (b"not json", "invalid JSON"),
        (b"[1, 2]", "expected a JSON object"),
        (b'{"service_port": 1, "metrics_url": "/m"}', "missing field 'metrics_port'"),
        (b'{"service_port": 1, "metrics_port": "9090", "metrics_url": "/m"}', "must be an integer"),
        (b'{"service_port": true, "metrics_port": 1, "metrics_url": "/m"}', "must be an integer"),
        (b'{"service_port": 1, "metrics_port": 2, "metrics_url": 3}', "must be a string"),
    ])
    def test_rejects_bad_values(self, raw, reason):
        with pytest.raises(MalformedValueError, match=reason) as exc:
            ServiceDef.from_json("/discovery/webapp/i1", raw)
        assert exc.value.key == "/discovery/webapp/i1"


class TestListTargetGroups:
    def test_example_entry(self, etcd, logger):
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        groups = list_target_groups(etcd, logger=logger)
        assert groups == [TargetGroup(targets=["instance-7:9090"], labels={"job": "webapp"})]

    def test_one_group_per_entry_in_key_order(self, etcd, logger):
        etcd.put("/discovery/db/pg-2", '{"service_port":5432,"metrics_port":9187,"metrics_url":"/metrics"}')
        etcd.put("/discovery/db/pg-1", '{"service_port":5432,"metrics_port":9187,"metrics_url":"/metrics"}')
        etcd.put("/discovery/webapp/instance-7", WEBAPP)

        groups = list_target_groups(etcd, logger=logger)

        assert [g.to_dict() for g in groups] == [
            {"targets": ["pg-1:9187"], "labels": {"job": "db"}},
            {"targets": ["pg-2:9187"], "labels": {"job": "db"}},
            {"targets": ["instance-7:9090"], "labels": {"job": "webapp"}},
        ]

    def test_empty_store(self, etcd, logger):
        assert list_target_groups(etcd, logger=logger) == []

    def test_prefix_limits_listing(self, etcd, logger):
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        etcd.put("/other/webapp/instance-8", WEBAPP)
        groups = list_target_groups(etcd, prefix="/discovery/", logger=logger)
        assert [g.targets for g in groups] == [["instance-7:9090"]]

    def test_malformed_key_aborts_listing(self, etcd, logger):
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        etcd.put("/stray", WEBAPP)
        with pytest.raises(MalformedKeyError) as exc:
            list_target_groups(etcd, logger=logger)
        assert exc.value.key == "/stray"

    def test_non_utf8_key(self, etcd, logger, monkeypatch):
        monkeypatch.setattr(etcd, "get_prefix", lambda prefix: [
            (WEBAPP.encode(), {"key": b"/discovery/web\xff/i1"}),
        ])
        with pytest.raises(MalformedKeyError, match="not valid UTF-8") as exc:
            list_target_groups(etcd, logger=logger)
        assert exc.value.key == repr(b"/discovery/web\xff/i1")

    def test_malformed_value(self, etcd, logger):
        etcd.put("/discovery/webapp/instance-7", "{oops")
        with pytest.raises(MalformedValueError) as exc:
            list_target_groups(etcd, logger=logger)
        assert exc.value.key == "/discovery/webapp/instance-7"

    def test_store_unreachable(self, etcd, logger):
        etcd.down = True
        with pytest.raises(ListingError, match="connection refused"):
            list_target_groups(etcd, logger=logger)

    def test_reads_fresh_every_call(self, etcd, logger):
        assert list_target_groups(etcd, logger=logger) == []
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        assert len(list_target_groups(etcd, logger=logger)) == 1
        del etcd.kvs["/discovery/webapp/instance-7"]
        assert list_target_groups(etcd, logger=logger) == []


class TestDiscoveryHTTP:
    def test_services_example(self, etcd, discovery_server):
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        status, ctype, body = http_get(discovery_server, "/services")
        assert status == 200
        assert ctype == "application/json"
        assert json.loads(body) == [{"targets": ["instance-7:9090"], "labels": {"job": "webapp"}}]

    def test_services_empty(self, discovery_server):
        status, _, body = http_get(discovery_server, "/services")
        assert status == 200
        assert json.loads(body) == []

    def test_query_string_ignored(self, discovery_server):
        status, _, _ = http_get(discovery_server, "/services?refresh=1")
        assert status == 200

    def test_malformed_key_is_503(self, etcd, discovery_server):
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        etcd.put("/bad", WEBAPP)
        status, ctype, body = http_get(discovery_server, "/services")
        assert status == 503
        assert ctype.startswith("text/plain")
        assert "'/bad'" in body
        assert "instance-7" not in body

    def test_malformed_value_is_503(self, etcd, discovery_server):
        etcd.put("/discovery/webapp/instance-7", "nope")
        status, _, body = http_get(discovery_server, "/services")
        assert status == 503
        assert "malformed service value" in body

    def test_unreachable_store_is_503(self, etcd, discovery_server, log_stream):
        etcd.down = True
        status, _, body = http_get(discovery_server, "/services")
        assert status == 503
        assert body == "connection refused"
        assert "discovery failed: connection refused" in log_stream.getvalue()

    def test_server_keeps_serving_after_failure(self, etcd, discovery_server):
        etcd.down = True
        assert http_get(discovery_server, "/services")[0] == 503
        etcd.down = False
        assert http_get(discovery_server, "/services")[0] == 200

    @pytest.mark.parametrize("path", ["/", "/metrics", "/services/", "/services/webapp"])
    def test_other_paths_are_404(self, discovery_server, path):
        status, _, body = http_get(discovery_server, path)
        assert status == 404
        assert body == ""

    def test_non_utf8_key_is_503(self, etcd, discovery_server, monkeypatch):
        monkeypatch.setattr(etcd, "get_prefix", lambda prefix: [
            (WEBAPP.encode(), {"key": b"/discovery/web\xff/i1"}),
        ])
        status, _, body = http_get(discovery_server, "/services")
        assert status == 503
        assert "not valid UTF-8" in body

    @pytest.mark.parametrize("method", ["POST", "PUT", "DELETE"])
    def test_any_method_on_services(self, etcd, discovery_server, method):
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        status, _, body = http_get(discovery_server, "/services", method=method)
        assert status == 200
        assert json.loads(body) == [{"targets": ["instance-7:9090"], "labels": {"job": "webapp"}}]

    @pytest.mark.parametrize("method", ["POST", "DELETE"])
    def test_any_method_on_other_paths_is_404(self, discovery_server, method):
        status, _, body = http_get(discovery_server, "/metrics", method=method)
        assert status == 404
        assert body == ""

    def test_head_sends_headers_only(self, etcd, discovery_server):
        etcd.put("/discovery/webapp/instance-7", WEBAPP)
        status, ctype, body = http_get(discovery_server, "/services", method="HEAD")
        assert status == 200
        assert ctype == "application/json"
        assert body == ""
