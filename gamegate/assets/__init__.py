"""Bundle resources: size tables, archive access, decoders and the async loader."""
