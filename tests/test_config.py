import json

import pytest

from chainfeed.config import DEFAULT_IPFS_GATEWAY, load_config, parse_config
from chainfeed.ipfs import normalize_metadata, to_gateway_url
from conftest import CONTRACT


def base(**overrides):
    raw = {"STREAMS": [{"name": "mints", "address": CONTRACT.upper().replace("0X", "0x")}]}
    raw.update(overrides)
    return raw


def test_defaults():
    cfg = parse_config(base())
    assert cfg.source == "log_scan"
    assert cfg.chain_id == 1
    assert cfg.ipfs_gateway == DEFAULT_IPFS_GATEWAY
    assert cfg.request_interval_sec == 0.5
    assert cfg.item_interval_sec == 0.35
    assert cfg.cache_ttl_sec == 60
    assert cfg.page_size == 10
    assert cfg.log_scan_api_key is None
    assert cfg.stream("mints").address == CONTRACT
    assert cfg.stream("mints").kind == "mint"
    with pytest.raises(KeyError):
        cfg.stream("nope")


def test_overrides_and_cors_list():
    cfg = parse_config(
        base(
            SOURCE="Indexer",
            INDEXER_URL=" https://indexer.example ",
            IPFS_GATEWAY="https://gw.example/ipfs",
            REQUEST_INTERVAL_MS=250,
            CORS_ALLOW_ORIGINS="https://a.example/, https://b.example",
        )
    )
    assert cfg.source == "indexer"
    assert cfg.indexer_url == "https://indexer.example"
    assert cfg.ipfs_gateway == "https://gw.example/ipfs/"
    assert cfg.request_interval_sec == 0.25
    assert cfg.cors_allow_origins == ["https://a.example", "https://b.example"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"SOURCE": "rpc"},
        {"STREAMS": []},
        {"STREAMS": [{"name": "x", "kind": "burn", "address": CONTRACT}]},
        {"STREAMS": [{"name": "x", "address": CONTRACT}, {"name": "x", "address": CONTRACT}]},
        {"STREAMS": [{"name": "x", "address": "0x12"}]},
        {"CACHE_TTL_SEC": 0},
        {"REQUEST_INTERVAL_MS": -1},
        {"PAGE_SIZE": 0},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValueError):
        parse_config(base(**overrides))


def test_load_config_reads_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(base(CHAIN_ID=8453, LOG_LEVEL="DEBUG")), encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg.chain_id == 8453
    assert cfg.log_level == "debug"


def test_gateway_rewrite():
    gw = "https://gw.example/ipfs/"
    assert to_gateway_url("ipfs://Qm1/meta.json", gw) == gw + "Qm1/meta.json"
    assert to_gateway_url("ipfs://ipfs/Qm1", gw) == gw + "Qm1"
    assert to_gateway_url("https://x.example/1.json", gw) == "https://x.example/1.json"
    assert to_gateway_url(None, gw) == ""


def test_normalize_metadata_keeps_known_fields():
    meta = normalize_metadata(
        {
            "name": "Hat",
            "image": "ipfs://QmImg",
            "attributes": [{"trait_type": "Color", "value": "red"}, "junk", {"value": 1}],
            "animation_url": "ipfs://QmAnim",
        },
        "https://gw.example/ipfs/",
    )
    assert meta.name == "Hat"
    assert meta.description == ""
    assert meta.image == "https://gw.example/ipfs/QmImg"
    assert [(a.trait, a.value) for a in meta.attributes] == [("Color", "red")]
    assert meta.animation_url == "https://gw.example/ipfs/QmAnim"
    assert meta.external_url is None
