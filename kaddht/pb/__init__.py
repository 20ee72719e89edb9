"""DHT message data types and the protocol messenger that sends them."""