"""对话引擎：状态机、增量解码与渲染节流。"""
