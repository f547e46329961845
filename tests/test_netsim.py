import asyncio
import errno
import ipaddress
import time

import pytest

from detsim.addr import SocketAddr
from detsim.config import Config
from detsim.ipvs import IpProtocol, Scheduler, ServiceAddr
from detsim.netsim import NetSim
from detsim.network import Socket
from detsim.rand import GlobalRng


class Recorder(Socket):
    def __init__(self):
        self.inbox = asyncio.Queue()
        self.connections = []

    def deliver(self, src, dst, msg):
        self.inbox.put_nowait((src, dst, msg))

    def new_connection(self, src, dst, tx, rx):
        self.connections.append((src, dst, tx, rx))


def make_sim(seed=1):
    sim = NetSim(GlobalRng(seed), Config())
    sim.create_node(1)
    sim.set_ip(1, "10.0.0.1")
    sim.create_node(2)
    sim.set_ip(2, "10.0.0.2")
    return sim


def addr(text):
    return SocketAddr.parse(text)


@pytest.mark.asyncio
async def test_send_delivers_message():
    sim = make_sim()
    rec = Recorder()
    guard = await sim.bind(2, "10.0.0.2:1", IpProtocol.UDP, rec)
    assert guard.addr == addr("10.0.0.2:1")
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (5, b"hi"))
    src, dst, msg = await asyncio.wait_for(rec.inbox.get(), 1)
    assert src == addr("10.0.0.1:7")
    assert dst == addr("10.0.0.2:1")
    assert msg == (5, b"hi")
    assert sim.stat().msg_count == 1


@pytest.mark.asyncio
async def test_loopback_source_address():
    sim = make_sim()
    rec = Recorder()
    await sim.bind(1, "127.0.0.1:3", IpProtocol.UDP, rec)
    await sim.send(1, 9, addr("127.0.0.1:3"), IpProtocol.UDP, (1, b"x"))
    src, _, _ = await asyncio.wait_for(rec.inbox.get(), 1)
    assert src == addr("127.0.0.1:9")


@pytest.mark.asyncio
async def test_clogged_node_drops_and_unclog_restores():
    sim = make_sim()
    rec = Recorder()
    guard = await sim.bind(2, "10.0.0.2:1", IpProtocol.UDP, rec)
    sim.clog_node(2)
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"a"))
    await asyncio.sleep(0.05)
    assert rec.inbox.empty()
    assert sim.stat().msg_count == 0
    sim.unclog_node(2)
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"b"))
    _, _, msg = await asyncio.wait_for(rec.inbox.get(), 1)
    assert msg == (1, b"b")


@pytest.mark.asyncio
async def test_clog_directions():
    sim = make_sim()
    rec = Recorder()
    guard = await sim.bind(2, "10.0.0.2:1", IpProtocol.UDP, rec)
    sim.clog_node_out(1)
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"a"))
    sim.unclog_node_out(1)
    sim.clog_node_in(2)
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"b"))
    sim.unclog_node_in(2)
    sim.clog_link(1, 2)
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"c"))
    sim.unclog_link(1, 2)
    await asyncio.sleep(0.05)
    assert rec.inbox.empty()
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"d"))
    _, _, msg = await asyncio.wait_for(rec.inbox.get(), 1)
    assert msg == (1, b"d")


@pytest.mark.asyncio
async def test_full_packet_loss():
    sim = make_sim()
    rec = Recorder()
    guard = await sim.bind(2, "10.0.0.2:1", IpProtocol.UDP, rec)
    sim.update_config(lambda c: setattr(c, "packet_loss_rate", 1.0))
    for _ in range(5):
        await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"a"))
    await asyncio.sleep(0.05)
    assert rec.inbox.empty()
    assert sim.stat().msg_count == 0


@pytest.mark.asyncio
async def test_ephemeral_ports_are_distinct():
    sim = make_sim()
    g1 = await sim.bind(1, "0.0.0.0:0", IpProtocol.UDP, Recorder())
    g2 = await sim.bind(1, "0.0.0.0:0", IpProtocol.UDP, Recorder())
    assert g1.addr.port != 0
    assert g2.addr.port != 0
    assert g1.addr.port != g2.addr.port


@pytest.mark.asyncio
async def test_bind_errors_and_release():
    sim = make_sim()
    with pytest.raises(OSError) as info:
        await sim.bind(1, "10.0.0.2:1", IpProtocol.UDP, Recorder())
    assert info.value.errno == errno.EADDRNOTAVAIL
    guard = await sim.bind(1, "10.0.0.1:100", IpProtocol.UDP, Recorder())
    with pytest.raises(OSError) as info:
        await sim.bind(1, "10.0.0.1:100", IpProtocol.UDP, Recorder())
    assert info.value.errno == errno.EADDRINUSE
    guard.close()
    guard.close()
    again = await sim.bind(1, "10.0.0.1:100", IpProtocol.UDP, Recorder())
    assert str(again.addr) == "10.0.0.1:100"


@pytest.mark.asyncio
async def test_reset_node_frees_sockets():
    sim = make_sim()
    await sim.bind(2, "10.0.0.2:1", IpProtocol.TCP, Recorder())
    sim.reset_node(2)
    guard = await sim.bind(2, "10.0.0.2:1", IpProtocol.TCP, Recorder())
    assert guard.addr == addr("10.0.0.2:1")


def test_ip_conflict():
    sim = make_sim()
    with pytest.raises(ValueError):
        sim.set_ip(2, "10.0.0.1")


@pytest.mark.asyncio
async def test_connect_exchanges_in_order():
    sim = make_sim()
    listener = Recorder()
    await sim.bind(2, "10.0.0.2:80", IpProtocol.TCP, listener)
    tx, rx, src = await sim.connect(1, 5000, addr("10.0.0.2:80"), IpProtocol.TCP)
    assert src == addr("10.0.0.1:5000")
    peer_src, peer_dst, peer_tx, peer_rx = listener.connections[0]
    assert peer_src == src
    assert peer_dst == addr("10.0.0.2:80")
    for item in ["a", "b", "c"]:
        tx.send(item)
    got = [await asyncio.wait_for(peer_rx.recv(), 1) for _ in range(3)]
    assert got == ["a", "b", "c"]
    peer_tx.send(b"pong")
    assert await asyncio.wait_for(rx.recv(), 1) == b"pong"


@pytest.mark.asyncio
async def test_connect_refused():
    sim = make_sim()
    with pytest.raises(ConnectionRefusedError):
        await sim.connect(1, 5000, addr("10.0.0.2:80"), IpProtocol.TCP)


@pytest.mark.asyncio
async def test_channel_waits_for_link_recovery():
    sim = make_sim()
    listener = Recorder()
    await sim.bind(2, "10.0.0.2:80", IpProtocol.TCP, listener)
    tx, _, _ = await sim.connect(1, 5000, addr("10.0.0.2:80"), IpProtocol.TCP)
    peer_rx = listener.connections[0][3]
    sim.clog_link(1, 2)
    tx.send("late")
    task = asyncio.create_task(peer_rx.recv())
    await asyncio.sleep(0.03)
    assert not task.done()
    sim.unclog_link(1, 2)
    assert await asyncio.wait_for(task, 2) == "late"


@pytest.mark.asyncio
async def test_receiver_close_is_seen_by_sender():
    sim = make_sim()
    listener = Recorder()
    await sim.bind(2, "10.0.0.2:80", IpProtocol.TCP, listener)
    tx, _, _ = await sim.connect(1, 5000, addr("10.0.0.2:80"), IpProtocol.TCP)
    peer_rx = listener.connections[0][3]
    assert not tx.is_closed()
    peer_rx.close()
    assert tx.is_closed()
    await asyncio.wait_for(tx.closed(), 1)
    with pytest.raises(ConnectionResetError):
        tx.send("x")


@pytest.mark.asyncio
async def test_sender_close_ends_stream():
    sim = make_sim()
    listener = Recorder()
    await sim.bind(2, "10.0.0.2:80", IpProtocol.TCP, listener)
    tx, _, _ = await sim.connect(1, 5000, addr("10.0.0.2:80"), IpProtocol.TCP)
    peer_rx = listener.connections[0][3]
    tx.send(1)
    tx.send(2)
    tx.close()
    items = [x async for x in peer_rx]
    assert items == [1, 2]
    with pytest.raises(EOFError):
        await peer_rx.recv()


@pytest.mark.asyncio
async def test_request_hook_drops_matching_requests():
    sim = make_sim()
    rec = Recorder()
    guard = await sim.bind(2, "10.0.0.2:1", IpProtocol.UDP, rec)
    sim.hook_rpc_req(1, lambda req: req != "drop")
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, (99, "drop", b"")))
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, (99, "keep", b"")))
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (1, b"raw"))
    await asyncio.sleep(0.05)
    msgs = []
    while not rec.inbox.empty():
        msgs.append(rec.inbox.get_nowait()[2])
    assert (1, (99, "drop", b"")) not in msgs
    assert (1, (99, "keep", b"")) in msgs
    assert (1, b"raw") in msgs


@pytest.mark.asyncio
async def test_response_hook_drops_matching_responses():
    sim = make_sim()
    rec = Recorder()
    guard = await sim.bind(2, "10.0.0.2:1", IpProtocol.UDP, rec)
    sim.hook_rpc_rsp(2, lambda rsp: rsp != "drop")
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (5, ("drop", b"")))
    await sim.send(1, 7, guard.addr, IpProtocol.UDP, (5, ("keep", b"")))
    await asyncio.sleep(0.05)
    msgs = []
    while not rec.inbox.empty():
        msgs.append(rec.inbox.get_nowait()[2])
    assert msgs == [(5, ("keep", b""))]


@pytest.mark.asyncio
async def test_ipvs_redirects_connection():
    sim = make_sim()
    service = ServiceAddr.tcp("1.1.1.1:80")
    ipvs = sim.global_ipvs()
    ipvs.add_service(service, Scheduler.ROUND_ROBIN)
    ipvs.add_server(service, "10.0.0.2:1")
    rec = Recorder()
    await sim.bind(2, "0.0.0.0:1", IpProtocol.TCP, rec)
    await sim.connect(1, 9, addr("1.1.1.1:80"), IpProtocol.TCP)
    assert rec.connections[0][1] == addr("10.0.0.2:1")


def test_dns_records_and_resolve():
    sim = make_sim()
    assert sim.lookup_host("localhost") == ipaddress.ip_address("127.0.0.1")
    sim.add_dns_record("madsim.io", "8.8.8.8")
    assert sim.lookup_host("madsim.io") == ipaddress.ip_address("8.8.8.8")
    assert sim.resolve("madsim.io:1") == [addr("8.8.8.8:1")]
    with pytest.raises(OSError):
        sim.resolve(("mad.io", 1))


@pytest.mark.asyncio
async def test_rand_delay_is_short_and_deterministic():
    rng_a = GlobalRng(5)
    rng_b = GlobalRng(5)
    sim_a = NetSim(rng_a, Config())
    sim_b = NetSim(rng_b, Config())
    start = time.monotonic()
    for _ in range(10):
        await sim_a.rand_delay()
        await sim_b.rand_delay()
    assert time.monotonic() - start < 1.0
    after_a = rng_a.next_u64()
    assert after_a == rng_b.next_u64()
    assert after_a != GlobalRng(5).next_u64()


def test_stat_is_a_snapshot():
    sim = make_sim()
    snapshot = sim.stat()
    snapshot.msg_count = 42
    assert sim.stat().msg_count == 0