"""
Market data feed v3 wire schema.

The vendor publishes FeedResponse as a protobuf message. Only the messages
and fields the decoder reads are declared here; protobuf skips the rest as
unknown fields, so frames from richer modes still parse.

The descriptor is assembled at import time so no generated *_pb2 module
has to be checked in.
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "chainfeed.marketdata.v3"

_F = descriptor_pb2.FieldDescriptorProto


def _add_field(msg, name, number, type_, type_name=None, label=_F.LABEL_OPTIONAL, oneof_index=None):
    field = msg.field.add(name=name, number=number, type=type_, label=label)
    if type_name is not None:
        field.type_name = f".{PACKAGE}.{type_name}"
    if oneof_index is not None:
        field.oneof_index = oneof_index
    return field


def _add_enum(file_proto, name, values):
    enum = file_proto.enum_type.add(name=name)
    for number, value_name in enumerate(values):
        enum.value.add(name=value_name, number=number)


def build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    """Declare the subset of MarketDataFeedV3 used for LTP extraction."""
    fp = descriptor_pb2.FileDescriptorProto(
        name="chainfeed/market_data_feed_v3.proto",
        package=PACKAGE,
        syntax="proto3",
    )
    
    _add_enum(fp, "Type", ["initial_feed", "live_feed", "market_info"])
    _add_enum(fp, "RequestMode", ["ltpc", "full_d5", "option_greeks", "full_d30"])
    
    ltpc = fp.message_type.add(name="LTPC")
    _add_field(ltpc, "ltp", 1, _F.TYPE_DOUBLE)
    _add_field(ltpc, "ltt", 2, _F.TYPE_INT64)
    _add_field(ltpc, "ltq", 3, _F.TYPE_INT64)
    _add_field(ltpc, "cp", 4, _F.TYPE_DOUBLE)
    
    market_ff = fp.message_type.add(name="MarketFullFeed")
    _add_field(market_ff, "ltpc", 1, _F.TYPE_MESSAGE, "LTPC")
    _add_field(market_ff, "atp", 5, _F.TYPE_DOUBLE)
    _add_field(market_ff, "vtt", 6, _F.TYPE_INT64)
    _add_field(market_ff, "oi", 7, _F.TYPE_DOUBLE)
    _add_field(market_ff, "iv", 8, _F.TYPE_DOUBLE)
    
    index_ff = fp.message_type.add(name="IndexFullFeed")
    _add_field(index_ff, "ltpc", 1, _F.TYPE_MESSAGE, "LTPC")
    
    full_feed = fp.message_type.add(name="FullFeed")
    full_feed.oneof_decl.add(name="FullFeedUnion")
    _add_field(full_feed, "marketFF", 1, _F.TYPE_MESSAGE, "MarketFullFeed", oneof_index=0)
    _add_field(full_feed, "indexFF", 2, _F.TYPE_MESSAGE, "IndexFullFeed", oneof_index=0)
    
    first_level = fp.message_type.add(name="FirstLevelWithGreeks")
    _add_field(first_level, "ltpc", 1, _F.TYPE_MESSAGE, "LTPC")
    _add_field(first_level, "vtt", 4, _F.TYPE_INT64)
    _add_field(first_level, "oi", 5, _F.TYPE_DOUBLE)
    _add_field(first_level, "iv", 6, _F.TYPE_DOUBLE)
    
    feed = fp.message_type.add(name="Feed")
    feed.oneof_decl.add(name="FeedUnion")
    _add_field(feed, "ltpc", 1, _F.TYPE_MESSAGE, "LTPC", oneof_index=0)
    _add_field(feed, "fullFeed", 2, _F.TYPE_MESSAGE, "FullFeed", oneof_index=0)
    _add_field(feed, "firstLevelWithGreeks", 3, _F.TYPE_MESSAGE, "FirstLevelWithGreeks", oneof_index=0)
    _add_field(feed, "requestMode", 4, _F.TYPE_ENUM, "RequestMode")
    
    response = fp.message_type.add(name="FeedResponse")
    entry = response.nested_type.add(name="FeedsEntry")
    entry.options.map_entry = True
    _add_field(entry, "key", 1, _F.TYPE_STRING)
    _add_field(entry, "value", 2, _F.TYPE_MESSAGE, "Feed")
    _add_field(response, "type", 1, _F.TYPE_ENUM, "Type")
    _add_field(response, "feeds", 2, _F.TYPE_MESSAGE, "FeedResponse.FeedsEntry", label=_F.LABEL_REPEATED)
    _add_field(response, "currentTs", 3, _F.TYPE_INT64)
    
    return fp


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(build_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.{name}"))


LTPC = _message_class("LTPC")
MarketFullFeed = _message_class("MarketFullFeed")
IndexFullFeed = _message_class("IndexFullFeed")
FullFeed = _message_class("FullFeed")
FirstLevelWithGreeks = _message_class("FirstLevelWithGreeks")
Feed = _message_class("Feed")
FeedResponse = _message_class("FeedResponse")

__all__ = [
    "PACKAGE",
    "build_file_descriptor",
    "LTPC",
    "MarketFullFeed",
    "IndexFullFeed",
    "FullFeed",
    "FirstLevelWithGreeks",
    "Feed",
    "FeedResponse",
]
