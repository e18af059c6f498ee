import pytest

from peerrun.plan import gen_peer_list, parse_host_spec, Peer, PeerID, PeerList, Strategy
from peerrun.utils import BuildError, ParseError, PlanError


@pytest.mark.level("unit")
def test_two_hosts_two_slots_each():
    peers = gen_peer_list(parse_host_spec("A:2,B:2"), 4)
    assert [(str(p.id), p.rank, p.local_rank) for p in peers] == [
        ("A:10000", 0, 0),
        ("A:10001", 1, 1),
        ("B:10000", 2, 0),
        ("B:10001", 3, 1),
    ]
    assert all(p.cluster_size == 4 for p in peers)


@pytest.mark.level("unit")
def test_ranks_are_dense_and_deterministic():
    hosts = parse_host_spec("h1:3,h2:1,h3:4")
    first = gen_peer_list(hosts, 6)
    second = gen_peer_list(parse_host_spec("h1:3,h2:1,h3:4"), 6)
    assert first == second
    assert [p.rank for p in first] == list(range(6))
    assert first.hosts() == ["h1", "h2", "h3"]
    assert len(first.on_host("h3")) == 2


@pytest.mark.level("unit")
def test_partial_fill_leaves_trailing_hosts_empty():
    peers = gen_peer_list(parse_host_spec("a:2,b:2,c:2"), 3)
    assert peers.hosts() == ["a", "b"]
    assert len(peers.on_host("c")) == 0


@pytest.mark.level("unit")
def test_custom_port_base():
    peers = gen_peer_list(parse_host_spec("a:2"), 2, port_base=20000)
    assert [p.id.port for p in peers] == [20000, 20001]


@pytest.mark.level("unit")
@pytest.mark.parametrize("count", [0, -1, 5])
def test_gen_peer_list_rejects_bad_counts(count):
    with pytest.raises(PlanError):
        gen_peer_list(parse_host_spec("a:2,b:2"), count)


@pytest.mark.level("unit")
def test_gen_peer_list_rejects_ports_out_of_range():
    with pytest.raises(PlanError, match="out of range"):
        gen_peer_list(parse_host_spec("a:3"), 3, port_base=65534)


@pytest.mark.level("unit")
def test_strategy_does_not_change_placement():
    hosts = parse_host_spec("a:2,b:2")
    assert gen_peer_list(hosts, 4, Strategy.RING) == gen_peer_list(hosts, 4, Strategy.TREE)


@pytest.mark.level("unit")
def test_strategy_parse():
    assert Strategy.parse("ring") is Strategy.RING
    assert Strategy.parse("binary-tree") is Strategy.BINARY_TREE
    assert Strategy.parse(None) is Strategy.AUTO
    assert Strategy.parse("") is Strategy.AUTO
    with pytest.raises(ParseError, match="unknown strategy"):
        Strategy.parse("hypercube")


@pytest.mark.level("unit")
def test_peer_id_parse():
    assert PeerID.parse("10.0.0.1:38080") == PeerID("10.0.0.1", 38080)
    for bad in ["10.0.0.1", ":80", "host:port", "host:0", "host:70000"]:
        with pytest.raises(ParseError):
            PeerID.parse(bad)


@pytest.mark.level("unit")
def test_env_value_round_trip():
    peers = gen_peer_list(parse_host_spec("a:2,b:1"), 3)
    assert peers.to_env_value() == "a:10000,a:10001,b:10000"
    assert PeerList.from_env_value(peers.to_env_value()) == peers
    assert len(PeerList.from_env_value("")) == 0


@pytest.mark.level("unit")
def test_peer_dict_round_trip():
    peer = gen_peer_list(parse_host_spec("a:2"), 2)[1]
    assert Peer.from_dict(peer.to_dict()) == peer


@pytest.mark.level("unit")
def test_validate():
    with pytest.raises(BuildError, match="empty"):
        PeerList().validate()

    peer = Peer(id=PeerID("a", 10000), rank=0, local_rank=0, cluster_size=2)
    with pytest.raises(BuildError, match="duplicate"):
        PeerList([peer, peer]).validate()

    bad = Peer(id=PeerID("", 10000), rank=0, local_rank=0, cluster_size=1)
    with pytest.raises(BuildError, match="invalid"):
        PeerList([bad]).validate()
