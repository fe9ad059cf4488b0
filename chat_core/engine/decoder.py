"""增量解码器：把原始字节流转换为文本片段。

使用有状态的 UTF-8 增量解码器，跨块边界被拆开的多字节字符会在
下一块到达时被完整拼回，而不是被替换为乱码。
"""

import codecs
from typing import AsyncIterator


async def decode_fragments(chunks: AsyncIterator[bytes], encoding: str = "utf-8") -> AsyncIterator[str]:
    """按到达顺序逐块解码，每块产出一个片段（可能为空字符串）。

    只能消费一次；底层流结束后冲刷解码器中残留的字节。
    """

    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    async for chunk in chunks:
        if chunk:
            yield decoder.decode(chunk)
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail
