from pydantic import BaseModel, ConfigDict


class RagBaseModel(BaseModel):
    model_config = ConfigDict(
        protected_namespaces=(),  # allow fields like model_id
        arbitrary_types_allowed=True,
    )
